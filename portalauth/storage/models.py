from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


USER_ROLES = ("client", "admin")


@dataclass
class User:
    id: int
    username: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: str = "client"
    is_active: bool = True
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class UserCredential:
    """Password and one-shot token material for a user.

    Reset and verification tokens are only ever held as SHA-256 digests.
    """

    user_id: int
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    verification_token_hash: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: int,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    @property
    def refresh_jti(self) -> Optional[str]:
        return (self.meta or {}).get("refresh_jti")


# Two-factor state is a closed set of variants so that "enabled without a
# secret" cannot be constructed.


@dataclass(frozen=True)
class TwoFactorDisabled:
    name: str = "disabled"


@dataclass(frozen=True)
class TwoFactorPending:
    """Enrollment generated by setup but not yet confirmed with a code."""

    secret: str
    backup_codes: Tuple[str, ...]
    expires_at: datetime
    name: str = "pending_verification"

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("pending two-factor enrollment requires a secret")
        if not self.backup_codes:
            raise ValueError("pending two-factor enrollment requires backup codes")


@dataclass(frozen=True)
class TwoFactorEnabled:
    secret: str
    backup_code_hashes: Tuple[str, ...]
    name: str = "enabled"

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("enabled two-factor state requires a secret")

    @property
    def has_backup_codes(self) -> bool:
        return bool(self.backup_code_hashes)


TwoFactorState = Union[TwoFactorDisabled, TwoFactorPending, TwoFactorEnabled]
