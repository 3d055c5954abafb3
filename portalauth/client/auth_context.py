from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import httpx
from pydantic import ValidationError

from portalauth.api.schemas import UserResponse
from portalauth.client.errors import ApiError, ClientError, NotAuthenticatedError
from portalauth.client.session_guard import (
    CHECK_INTERVAL_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    SessionGuard,
)
from portalauth.client.storage import KeyValueStorage, MemoryStorage
from portalauth.client.token_manager import DEFAULT_TIMEOUT_SECONDS, TokenManager
from portalauth.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: Optional[UserResponse] = None
    requires_two_factor: bool = False
    user_id: Optional[int] = None
    email_verification_required: bool = False


class AuthContext:
    """User-facing session object combining the token manager and idle guard.

    Construct one per client, ``await init()`` before use and ``await
    dispose()`` when done (or use it as an async context manager). Nothing
    is shared between instances, so tests can run several side by side.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        storage: Optional[KeyValueStorage] = None,
        *,
        token_manager: Optional[TokenManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        idle_timeout_seconds: float = IDLE_TIMEOUT_SECONDS,
        check_interval_seconds: float = CHECK_INTERVAL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.storage = storage if storage is not None else MemoryStorage()
        self.tokens = token_manager or TokenManager(
            base_url, self.storage, transport=transport, timeout=timeout
        )
        guard_kwargs: dict[str, Any] = {
            "idle_timeout_seconds": idle_timeout_seconds,
            "check_interval_seconds": check_interval_seconds,
        }
        if clock is not None:
            guard_kwargs["clock"] = clock
        self.guard = SessionGuard(self.storage, self._handle_idle, **guard_kwargs)
        self._user: Optional[UserResponse] = None
        self._loading = False
        self._pending_challenge: Optional[Tuple[int, str]] = None

    async def __aenter__(self) -> "AuthContext":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    @property
    def user(self) -> Optional[UserResponse]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None and self.tokens.get() is not None

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def awaiting_two_factor(self) -> bool:
        return self._pending_challenge is not None

    # lifecycle

    async def init(self) -> None:
        """Restore a persisted session; never raises for a stale or missing one."""
        self._loading = True
        try:
            if not self.tokens.hydrate():
                return
            try:
                data = await self.tokens.request_json("GET", "/auth/me")
                self._user = UserResponse.model_validate(data["user"])
            except (ClientError, KeyError, TypeError, ValidationError) as exc:
                logger.info(
                    "session_restore_failed",
                    error_type=type(exc).__name__,
                    error_code=getattr(exc, "code", None),
                )
                self._clear_local_state()
                return
            self.guard.start()
            # the persisted activity may already be past the idle threshold
            if await self.guard.check():
                return
            # a live restore starts a fresh idle window
            self.guard.reset()
            logger.info("session_restored", user_id=self._user.id)
        finally:
            self._loading = False

    async def dispose(self) -> None:
        """Stop background work and close the HTTP client; keeps the stored session."""
        self.guard.stop()
        await self.tokens.aclose()

    # operations

    def _establish(self, data: dict) -> UserResponse:
        user = UserResponse.model_validate(data["user"])
        self.tokens.set(data["accessToken"])
        self._user = user
        self._pending_challenge = None
        self.guard.reset()
        self.guard.start()
        return user

    async def login(self, identifier: str, password: str) -> LoginResult:
        self._loading = True
        try:
            data = await self.tokens.request_json(
                "POST",
                "/auth/login",
                json={"identifier": identifier, "password": password},
                retry_on_401=False,
            )
        finally:
            self._loading = False
        if data.get("requires2FA"):
            user_id = int(data["userId"])
            self._pending_challenge = (user_id, data["tempToken"])
            logger.info("login_two_factor_required", user_id=user_id)
            return LoginResult(requires_two_factor=True, user_id=user_id)
        user = self._establish(data)
        return LoginResult(user=user, user_id=user.id)

    async def verify_two_factor(self, code: str, is_backup_code: bool = False) -> LoginResult:
        """Answer the challenge left by ``login`` with a TOTP or backup code."""
        if self._pending_challenge is None:
            raise ClientError("no two-factor challenge is pending; log in first")
        user_id, temp_token = self._pending_challenge
        self._loading = True
        try:
            data = await self.tokens.request_json(
                "POST",
                "/auth/verify-2fa",
                json={
                    "userId": user_id,
                    "tempToken": temp_token,
                    "token": code.strip(),
                    "isBackupCode": is_backup_code,
                },
                retry_on_401=False,
            )
        except ApiError as exc:
            # a wrong code keeps the challenge; an expired or locked one does not
            if exc.code != "invalid_two_factor_code":
                self._pending_challenge = None
            raise
        finally:
            self._loading = False
        user = self._establish(data)
        return LoginResult(user=user, user_id=user.id)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        confirm_password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> LoginResult:
        self._loading = True
        try:
            data = await self.tokens.request_json(
                "POST",
                "/auth/register",
                json={
                    "username": username,
                    "email": email,
                    "password": password,
                    "confirmPassword": confirm_password,
                    "name": name,
                    "phone": phone,
                },
                retry_on_401=False,
            )
        finally:
            self._loading = False
        if data.get("emailVerificationRequired"):
            user = UserResponse.model_validate(data["user"])
            return LoginResult(user=user, user_id=user.id, email_verification_required=True)
        user = self._establish(data)
        return LoginResult(user=user, user_id=user.id)

    async def refresh_user(self) -> Optional[UserResponse]:
        """Re-fetch the profile; a dead session clears local state and returns None."""
        try:
            data = await self.tokens.request_json("GET", "/auth/me")
        except NotAuthenticatedError:
            logger.info("session_expired")
            self._clear_local_state()
            return None
        self._user = UserResponse.model_validate(data["user"])
        return self._user

    async def logout(self) -> None:
        """End the session. Safe to call repeatedly; server failures are ignored."""
        self.guard.stop()
        had_session = self.tokens.get() is not None or self._user is not None
        if had_session:
            try:
                response = await self.tokens.request("POST", "/auth/logout", retry_on_401=False)
                if not response.is_success:
                    logger.warning("logout_request_rejected", status_code=response.status_code)
            except httpx.HTTPError as exc:
                logger.warning(
                    "logout_request_failed", error_type=type(exc).__name__, error=str(exc)
                )
        self._clear_local_state()
        if had_session:
            logger.info("logged_out")

    def _clear_local_state(self) -> None:
        self.guard.stop()
        self.tokens.set(None)
        self.tokens.forget_refresh_cookie()
        self.guard.clear()
        self._user = None
        self._pending_challenge = None

    async def _handle_idle(self) -> None:
        logger.info("idle_logout", user_id=self._user.id if self._user else None)
        await self.logout()
