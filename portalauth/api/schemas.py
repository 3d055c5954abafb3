from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from portalauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "refresh_invalid",
    "invalid_two_factor_code",
    "password_mismatch",
    "forbidden",
    "account_inactive",
    "email_not_verified",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Response wrapper shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    """Accepts camelCase or snake_case keys and serializes as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    # Strip zero-width characters usable for look-alike usernames
    cleaned = "".join(c for c in value if c not in "\u200b\u200c\u200d\ufeff")
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_PHONE_PATTERN = re.compile(r"^[\d\s\-+()]+$")
_PASSWORD_SPECIALS = set('!@#$%^&*(),.?":{}|<>')


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters long")
    if len(value) > 20:
        raise ValueError("username must be no more than 20 characters long")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username can only contain letters, numbers, underscores, and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    """Length 8-128 with upper, lower, digit and special characters."""
    problems = []
    if len(value) < 8:
        problems.append("at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.isupper() for c in value):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in value):
        problems.append("a lowercase letter")
    if not any(c.isdigit() for c in value):
        problems.append("a number")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        problems.append("a special character")
    if problems:
        raise ValueError("password must contain " + ", ".join(problems))
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if not _PHONE_PATTERN.match(value) or len(re.sub(r"\D", "", value)) < 10:
        raise ValueError("invalid phone number")
    return value


# requests


class RegisterRequest(_CamelModel):
    username: str
    email: str
    password: str
    confirm_password: str
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(_CamelModel):
    """Login by username or e-mail; ``email`` and ``username`` are accepted as aliases."""

    identifier: Optional[str] = Field(default=None, max_length=254)
    email: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def _resolve_identifier(self):
        resolved = self.identifier or self.email or self.username
        if not resolved or not resolved.strip():
            raise ValueError("identifier, email or username is required")
        self.identifier = resolved.strip()
        return self


class VerifyTwoFactorLoginRequest(_CamelModel):
    user_id: int
    temp_token: str = Field(..., min_length=1, max_length=256)
    token: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False


class EmailVerificationRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TwoFactorVerifyRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=10)
    backup_codes: Optional[List[str]] = Field(default=None, max_length=20)


class TwoFactorDisableRequest(_CamelModel):
    password: str = Field(..., min_length=1, max_length=128)
    token: str = Field(..., min_length=1, max_length=32)


class TwoFactorCodeRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=10)


class UserActiveRequest(_CamelModel):
    is_active: bool


class AdminCreateUserRequest(_CamelModel):
    """Provision an account; without a password the client cannot log in."""

    email: str
    name: str = Field(..., min_length=1, max_length=200)
    username: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = None
    role: Literal["client", "admin"] = "client"

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = _normalize_unicode(value.strip())
        if not value:
            raise ValueError("name is required")
        return value

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _validate_username(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        return _validate_password_strength(value)


class AdminSetPasswordRequest(_CamelModel):
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


# responses


class UserResponse(_CamelModel):
    id: int
    username: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: str
    is_active: bool = True
    email_verified: bool = False
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AuthTokenResponse(_CamelModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: int


class LoginChallengeResponse(_CamelModel):
    requires_2fa: bool = Field(default=True, alias="requires2FA")
    user_id: int
    temp_token: str


class RegistrationPendingResponse(_CamelModel):
    user: UserResponse
    email_verification_required: bool = True


class RefreshResponse(_CamelModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: int


class MessageResponse(_CamelModel):
    message: str


class TwoFactorStatusResponse(_CamelModel):
    enabled: bool
    has_backup_codes: bool
    pending: bool = False


class TwoFactorSetupResponse(_CamelModel):
    qr_code_url: str
    secret: str
    otpauth_url: str
    backup_codes: List[str]
    expires_at: datetime


class TwoFactorToggleResponse(_CamelModel):
    message: str
    enabled: bool


class BackupCodesResponse(_CamelModel):
    backup_codes: List[str]


class UserListResponse(_CamelModel):
    users: List[UserResponse]
