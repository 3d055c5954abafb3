from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    Response,
)
from pydantic import BaseModel

from portalauth.api.schemas import (
    AdminCreateUserRequest,
    AdminSetPasswordRequest,
    AuthTokenResponse,
    BackupCodesResponse,
    EmailRequest,
    EmailVerificationRequest,
    Envelope,
    LoginChallengeResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RefreshResponse,
    RegisterRequest,
    RegistrationPendingResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorToggleResponse,
    TwoFactorVerifyRequest,
    UserActiveRequest,
    UserListResponse,
    UserResponse,
    VerifyTwoFactorLoginRequest,
)
from portalauth.logging import get_logger
from portalauth.service.auth import IssuedTokens, LoginOutcome, Principal
from portalauth.service.runtime import Runtime, check_rate_limit, get_runtime
from portalauth.storage.models import TwoFactorEnabled, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Raise 429 once ``key`` has used up ``limit`` requests in the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "Too many attempts; please try again later",
            status_code=429,
            details={"retry_after": info.reset_seconds},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_user(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_role="admin")


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _ok(data: BaseModel) -> Envelope:
    return Envelope(status="ok", data=_dump(data))


def _user_to_response(runtime: Runtime, user: User) -> UserResponse:
    state = runtime.store.get_two_factor_state(user.id)
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        name=user.name,
        phone=user.phone,
        role=user.role,
        is_active=user.is_active,
        email_verified=user.email_verified,
        two_factor_enabled=isinstance(state, TwoFactorEnabled),
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _apply_refresh_cookie(runtime: Runtime, response: Response, tokens: IssuedTokens) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(runtime: Runtime, response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE, path="/", secure=runtime.settings.cookie_secure, samesite="lax"
    )


def _login_response(runtime: Runtime, outcome: LoginOutcome, response: Response) -> Envelope:
    if outcome.requires_two_factor:
        return _ok(
            LoginChallengeResponse(user_id=outcome.user.id, temp_token=outcome.temp_token)
        )
    tokens = outcome.tokens
    _apply_refresh_cookie(runtime, response, tokens)
    return _ok(
        AuthTokenResponse(
            user=_user_to_response(runtime, outcome.user),
            access_token=tokens.access_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
        )
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a client account.

    When e-mail verification is required the account is created unverified,
    a verification mail is sent and no tokens are issued.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    outcome = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        name=body.name,
        phone=body.phone,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    if outcome.verification_required:
        # SMTP is blocking
        await asyncio.to_thread(
            runtime.email.send_email_verification,
            outcome.user.email,
            outcome.user.username,
            outcome.verification_token,
        )
        return _ok(RegistrationPendingResponse(user=_user_to_response(runtime, outcome.user)))
    _apply_refresh_cookie(runtime, response, outcome.tokens)
    return _ok(
        AuthTokenResponse(
            user=_user_to_response(runtime, outcome.user),
            access_token=outcome.tokens.access_token,
            expires_at=outcome.tokens.access_expires_at,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login; answers with tokens or a second-factor challenge."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    outcome = await runtime.auth.login(
        body.identifier,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _login_response(runtime, outcome, response)


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor_login(
    body: VerifyTwoFactorLoginRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:login:{body.user_id}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
    )
    outcome = await runtime.two_factor.verify_login(
        body.user_id,
        body.temp_token,
        body.token,
        is_backup_code=body.is_backup_code,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _login_response(runtime, outcome, response)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    _user, tokens = await runtime.auth.refresh(refresh_token)
    _apply_refresh_cookie(runtime, response, tokens)
    return _ok(
        RefreshResponse(
            access_token=tokens.access_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """End the session behind the presented tokens; always succeeds."""
    runtime = get_runtime()
    await runtime.auth.logout(
        access_token=runtime.auth.extract_bearer(authorization),
        refresh_token=refresh_token,
    )
    _clear_refresh_cookie(runtime, response)
    return _ok(MessageResponse(message="Logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.me(principal)
    return Envelope(status="ok", data={"user": _dump(_user_to_response(runtime, user))})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-email:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    outcome = await runtime.auth.verify_email(
        body.token,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _login_response(runtime, outcome, response)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend-verification:{body.email}",
        runtime.settings.password_reset_rate_limit,
        runtime.settings.password_reset_rate_window_seconds,
    )
    issued = await runtime.auth.resend_verification(body.email)
    if issued:
        user, token = issued
        await asyncio.to_thread(
            runtime.email.send_email_verification, user.email, user.username, token
        )
    # Same answer either way so account existence is not revealed
    return _ok(
        MessageResponse(
            message="If an unverified account exists for that address, a verification email has been sent"
        )
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.password_reset_rate_limit,
        runtime.settings.password_reset_rate_window_seconds,
    )
    issued = await runtime.auth.request_password_reset(body.email)
    if issued:
        user, token = issued
        await asyncio.to_thread(runtime.email.send_password_reset, user.email, token)
    return _ok(
        MessageResponse(
            message="If an account exists for that address, a password reset link has been sent"
        )
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    # Bounds token guessing
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    await runtime.auth.complete_password_reset(body.token, body.password)
    _clear_refresh_cookie(runtime, response)
    return _ok(MessageResponse(message="Password has been reset; please log in"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_user)
):
    """Change the password; every other session of the user is revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return _ok(MessageResponse(message="Password changed"))


# two-factor


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.two_factor.status(principal.user_id)
    return _ok(
        TwoFactorStatusResponse(
            enabled=status.enabled,
            has_backup_codes=status.has_backup_codes,
            pending=status.pending,
        )
    )


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: Principal = Depends(get_user)):
    """Start enrollment; nothing is persisted until /2fa/verify succeeds."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:setup:{principal.user_id}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
    )
    user = runtime.auth.me(principal)
    setup = await runtime.two_factor.setup(user)
    return _ok(
        TwoFactorSetupResponse(
            qr_code_url=setup.qr_code_url,
            secret=setup.secret,
            otpauth_url=setup.otpauth_uri,
            backup_codes=setup.backup_codes,
            expires_at=setup.expires_at,
        )
    )


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorVerifyRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:verify:{principal.user_id}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
    )
    await runtime.two_factor.verify_setup(
        principal.user_id, body.token, backup_codes=body.backup_codes
    )
    user = runtime.auth.me(principal)
    await asyncio.to_thread(runtime.email.send_two_factor_notice, user.email, enabled=True)
    return _ok(
        TwoFactorToggleResponse(
            message="Two-factor authentication enabled", enabled=True
        )
    )


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, principal: Principal = Depends(get_user)
):
    """Turn 2FA off; needs the account password and a current code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:disable:{principal.user_id}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
    )
    await runtime.two_factor.disable(principal.user_id, body.password, body.token)
    user = runtime.auth.me(principal)
    await asyncio.to_thread(runtime.email.send_two_factor_notice, user.email, enabled=False)
    return _ok(
        TwoFactorToggleResponse(
            message="Two-factor authentication disabled", enabled=False
        )
    )


@router.put("/2fa/regenerate-backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:regenerate:{principal.user_id}",
        runtime.settings.two_factor_rate_limit,
        runtime.settings.two_factor_rate_window_seconds,
    )
    codes = await runtime.two_factor.regenerate_backup_codes(principal.user_id, body.token)
    return _ok(BackupCodesResponse(backup_codes=codes))


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    return _ok(UserListResponse(users=[_user_to_response(runtime, u) for u in users]))


@router.post("/admin/users/{user_id}/active", response_model=Envelope, tags=["admin"])
async def admin_set_active(
    body: UserActiveRequest,
    user_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_admin_user),
):
    """Activate or deactivate an account; deactivation ends its sessions."""
    runtime = get_runtime()
    if user_id == principal.user_id and not body.is_active:
        raise _http_error(
            "validation_error", "Administrators cannot deactivate themselves", status_code=400
        )
    user = await runtime.auth.set_user_active(user_id, body.is_active)
    logger.info(
        "admin_user_active_changed",
        admin_id=principal.user_id,
        user_id=user_id,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data={"user": _dump(_user_to_response(runtime, user))})


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    principal: Principal = Depends(get_admin_user),
):
    """Provision an account; omit ``password`` for a client who never logs in."""
    runtime = get_runtime()
    user = await runtime.auth.admin_create_user(
        body.username,
        body.email,
        body.password,
        role=body.role,
        name=body.name,
        phone=body.phone,
    )
    logger.info(
        "admin_user_created",
        admin_id=principal.user_id,
        user_id=user.id,
        role=user.role,
        can_login=body.password is not None,
    )
    return Envelope(status="ok", data={"user": _dump(_user_to_response(runtime, user))})


@router.put("/admin/users/{user_id}/password", response_model=Envelope, tags=["admin"])
async def admin_set_password(
    body: AdminSetPasswordRequest,
    user_id: int = Path(..., ge=1),
    principal: Principal = Depends(get_admin_user),
):
    """Set a user's password; every session of that user is ended."""
    runtime = get_runtime()
    user = await runtime.auth.admin_set_password(user_id, body.password)
    logger.info("admin_user_password_set", admin_id=principal.user_id, user_id=user_id)
    return _ok(MessageResponse(message=f"Password reset for {user.username}"))
