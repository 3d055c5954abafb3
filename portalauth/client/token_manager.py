from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from portalauth.client.errors import ApiError, NotAuthenticatedError
from portalauth.client.storage import ACCESS_TOKEN_KEY, KeyValueStorage
from portalauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REFRESH_PATH = "/auth/refresh"
REFRESH_COOKIE = "refresh_token"
# 401 codes that mean the access token itself is stale or missing. Other 401s
# (a mistyped password or 2FA code) answer the request body.
TOKEN_ERROR_CODES = frozenset({"unauthorized", "token_expired"})


def _decode_envelope(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _is_token_rejection(response: httpx.Response) -> bool:
    error = _decode_envelope(response).get("error")
    code = error.get("code") if isinstance(error, dict) else None
    return code is None or code in TOKEN_ERROR_CODES


class TokenManager:
    """Owns the access token and the authenticated request cycle.

    The access token lives in memory and is mirrored to ``storage`` so a
    restarted client can hydrate it. The refresh token is an HttpOnly cookie
    kept in the shared ``httpx.AsyncClient`` jar and is never read here.

    A 401 rejecting the access token on any call other than the refresh call
    triggers one refresh and, if that succeeds, one retry. Concurrent 401s share a single in-flight
    refresh. Every ``set`` bumps a generation counter so a refresh that
    finishes after a logout cannot bring the old session back.
    """

    def __init__(
        self,
        base_url: str,
        storage: KeyValueStorage,
        *,
        api_prefix: str = "/v1",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage
        self.api_prefix = api_prefix.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )
        self._token: Optional[str] = None
        self._generation = 0
        self._refresh_task: Optional[asyncio.Task] = None

    # token state

    def hydrate(self) -> Optional[str]:
        """Load the persisted access token into memory."""
        self._token = self.storage.get(ACCESS_TOKEN_KEY) or None
        return self._token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: Optional[str]) -> None:
        self._generation += 1
        self._token = token
        if token:
            self.storage.set(ACCESS_TOKEN_KEY, token)
        else:
            self.storage.remove(ACCESS_TOKEN_KEY)

    def forget_refresh_cookie(self) -> None:
        self.http.cookies.delete(REFRESH_COOKIE)

    # refresh

    async def refresh(self) -> bool:
        """Rotate the refresh cookie for a new access token.

        Callers arriving while a refresh is in flight await that same refresh.
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._do_refresh(self._generation))
            self._refresh_task = task
        # A cancelled caller must not cancel the refresh other callers share
        return await asyncio.shield(task)

    async def _do_refresh(self, generation: int) -> bool:
        try:
            response = await self.http.post(
                self.api_prefix + REFRESH_PATH, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "token_refresh_network_error", error_type=type(exc).__name__, error=str(exc)
            )
            return False

        if generation != self._generation:
            logger.info("token_refresh_discarded", status_code=response.status_code)
            if self._token is None:
                # logged out mid-flight; drop the cookie the server just rotated
                self.forget_refresh_cookie()
            return self._token is not None

        if response.status_code != 200:
            logger.info("token_refresh_failed", status_code=response.status_code)
            if response.status_code in (401, 403):
                self.set(None)
            return False

        data = _decode_envelope(response).get("data") or {}
        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            logger.warning("token_refresh_malformed_response")
            return False
        self.set(token)
        logger.info("token_refreshed")
        return True

    # requests

    def _url(self, path: str) -> str:
        return path if path.startswith(("http://", "https://")) else self.api_prefix + path

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        kwargs.setdefault("timeout", self.timeout)
        return await self.http.request(method, self._url(path), headers=headers, **kwargs)

    async def request(
        self, method: str, path: str, *, retry_on_401: bool = True, **kwargs: Any
    ) -> httpx.Response:
        """Send ``method path`` with the bearer token attached.

        Network errors propagate as ``httpx.HTTPError``. Pass
        ``retry_on_401=False`` for calls where a 401 means bad input rather
        than a stale token, such as login.
        """
        response = await self._send(method, path, **kwargs)
        if response.status_code != 401 or not retry_on_401 or path == REFRESH_PATH:
            return response
        if not _is_token_rejection(response):
            return response
        if not await self.refresh():
            return response
        # one retry only; a second 401 goes back to the caller
        return await self._send(method, path, **kwargs)

    async def request_json(
        self, method: str, path: str, *, retry_on_401: bool = True, **kwargs: Any
    ) -> Any:
        """Like ``request`` but unwraps the envelope and returns its ``data``."""
        try:
            response = await self.request(method, path, retry_on_401=retry_on_401, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(0, "network_error", str(exc) or type(exc).__name__) from exc

        payload = _decode_envelope(response)
        if response.is_success:
            return payload.get("data")

        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        message = error.get("message") or f"HTTP error {response.status_code}"
        code = error.get("code") or "server_error"
        if response.status_code == 401:
            raise NotAuthenticatedError(message, code, error.get("details"))
        raise ApiError(response.status_code, code, message, error.get("details"))

    async def aclose(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
        if self._owns_client:
            await self.http.aclose()
