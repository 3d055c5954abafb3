"""TOTP enrollment and verification with single-use backup codes.

State per user moves ``disabled -> pending_verification -> enabled`` and
back through ``pending_disable`` inside :meth:`TwoFactorEngine.disable`.
A pending enrollment lives only in the cache (or the in-process fallback)
until a code proves the authenticator was set up, so abandoning setup
leaves the user record untouched.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
import json
import os
import secrets
import struct
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import quote, urlencode

import qrcode
from cryptography.fernet import InvalidToken
from qrcode.image.pil import PilImage

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.auth import AuthService, AuthStore, LoginOutcome
from portalauth.service.errors import (
    AuthenticationError,
    InvalidTwoFactorCodeError,
    PasswordMismatchError,
    RateLimitedError,
    TwoFactorStateError,
)
from portalauth.storage.common import build_secret_cipher, hash_token
from portalauth.storage.models import (
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorState,
    User,
)
from portalauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_DRIFT_STEPS = 1
BACKUP_CODE_BYTES = 4  # 8 hex characters
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_SECONDS = 300


def generate_secret() -> str:
    """160-bit base32 secret, the size authenticator apps expect."""
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // interval))
    # RFC 6238 default HMAC-SHA1, which every authenticator app implements
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = TOTP_DRIFT_STEPS,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the code for the current step or one step either side."""
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    now = time.time() if at is None else at
    matched = False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        # Constant-time, and every step is checked regardless of an early match
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().replace("-", "").replace(" ", "").upper()


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


def hash_backup_codes(codes: Iterable[str]) -> List[str]:
    return [hash_token(normalize_backup_code(code)) for code in codes]


def build_otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def render_qr_data_url(uri: str) -> str:
    image = qrcode.make(uri, image_factory=PilImage)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


@dataclass
class TwoFactorStatus:
    enabled: bool
    has_backup_codes: bool
    pending: bool = False


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code_url: str
    backup_codes: List[str]
    expires_at: datetime


class TwoFactorEngine:
    """Two-factor state machine on top of the credential store."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        auth: AuthService,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.auth = auth
        self.logger = logger
        self._cipher = build_secret_cipher(
            settings.mfa_secret_key or settings.jwt_secret,
            Path(settings.shared_fs_root),
        )
        self._state_lock = threading.Lock()
        # In-memory fallbacks used when Redis is not configured
        self._pending: dict[int, str] = {}  # user_id -> encrypted enrollment
        self._attempts: dict[int, tuple[int, datetime]] = {}  # user_id -> (count, window_start)
        self._lockouts: dict[int, datetime] = {}  # user_id -> locked_until

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # pending enrollment storage
    def _seal(self, pending: TwoFactorPending) -> str:
        payload = {
            "secret": pending.secret,
            "backup_codes": list(pending.backup_codes),
            "expires_at": pending.expires_at.isoformat(),
        }
        return self._cipher.encrypt(json.dumps(payload).encode()).decode()

    def _unseal(self, sealed: Optional[str]) -> Optional[TwoFactorPending]:
        if not sealed:
            return None
        try:
            data = json.loads(self._cipher.decrypt(sealed.encode()))
            pending = TwoFactorPending(
                secret=data["secret"],
                backup_codes=tuple(data["backup_codes"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (InvalidToken, ValueError, KeyError, TypeError):
            self.logger.warning("two_factor_pending_unreadable")
            return None
        if pending.expires_at <= self._now():
            return None
        return pending

    async def _save_pending(self, user_id: int, pending: TwoFactorPending) -> None:
        sealed = self._seal(pending)
        if self.cache:
            await self.cache.set_pending_enrollment(
                user_id, sealed, self.settings.two_factor_setup_ttl_seconds
            )
        else:
            with self._state_lock:
                self._pending[user_id] = sealed

    async def _load_pending(self, user_id: int) -> Optional[TwoFactorPending]:
        if self.cache:
            sealed = await self.cache.get_pending_enrollment(user_id)
        else:
            with self._state_lock:
                sealed = self._pending.get(user_id)
        return self._unseal(sealed)

    async def _clear_pending(self, user_id: int) -> None:
        if self.cache:
            await self.cache.delete_pending_enrollment(user_id)
        else:
            with self._state_lock:
                self._pending.pop(user_id, None)

    # attempt lockout
    async def _ensure_not_locked(self, user_id: int) -> None:
        if self.cache:
            locked = await self.cache.check_mfa_lockout(user_id)
        else:
            now = self._now()
            with self._state_lock:
                locked_until = self._lockouts.get(user_id)
                locked = bool(locked_until and locked_until > now)
                if locked_until and not locked:
                    self._lockouts.pop(user_id, None)
        if locked:
            self.logger.warning("mfa_locked_out", user_id=user_id)
            raise RateLimitedError(
                "Too many invalid codes; try again later",
                detail={"retry_after": LOCKOUT_SECONDS},
            )

    async def _record_failure(self, user_id: int) -> bool:
        """Count a failed code; returns True once the user is locked out."""
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=MAX_FAILED_ATTEMPTS, lockout_seconds=LOCKOUT_SECONDS
            )
        else:
            now = self._now()
            with self._state_lock:
                current = self._attempts.get(user_id)
                window_start = now
                attempts = 1
                if current:
                    count, prev_window_start = current
                    if now - prev_window_start < timedelta(seconds=LOCKOUT_SECONDS):
                        attempts = count + 1
                        window_start = prev_window_start
                self._attempts[user_id] = (attempts, window_start)
                is_locked = attempts >= MAX_FAILED_ATTEMPTS
                if is_locked:
                    self._lockouts[user_id] = now + timedelta(seconds=LOCKOUT_SECONDS)
                    self._attempts.pop(user_id, None)
        if is_locked:
            self.logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
        return is_locked

    async def _clear_failures(self, user_id: int) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
        else:
            with self._state_lock:
                self._attempts.pop(user_id, None)

    # state
    async def state(self, user_id: int) -> TwoFactorState:
        stored = self.store.get_two_factor_state(user_id)
        if isinstance(stored, TwoFactorEnabled):
            return stored
        pending = await self._load_pending(user_id)
        return pending or TwoFactorDisabled()

    async def status(self, user_id: int) -> TwoFactorStatus:
        current = await self.state(user_id)
        if isinstance(current, TwoFactorEnabled):
            return TwoFactorStatus(enabled=True, has_backup_codes=current.has_backup_codes)
        return TwoFactorStatus(
            enabled=False,
            has_backup_codes=False,
            pending=isinstance(current, TwoFactorPending),
        )

    async def setup(self, user: User) -> TwoFactorSetup:
        """Start (or restart) enrollment without touching the stored record."""
        if isinstance(self.store.get_two_factor_state(user.id), TwoFactorEnabled):
            raise TwoFactorStateError("Two-factor authentication is already enabled")
        secret = generate_secret()
        pending = TwoFactorPending(
            secret=secret,
            backup_codes=tuple(generate_backup_codes(self.settings.backup_code_count)),
            expires_at=self._now()
            + timedelta(seconds=self.settings.two_factor_setup_ttl_seconds),
        )
        await self._save_pending(user.id, pending)
        uri = build_otpauth_uri(secret, user.email, self.settings.two_factor_issuer)
        self.logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=uri,
            qr_code_url=render_qr_data_url(uri),
            backup_codes=list(pending.backup_codes),
            expires_at=pending.expires_at,
        )

    async def verify_setup(
        self,
        user_id: int,
        code: str,
        backup_codes: Optional[List[str]] = None,
    ) -> None:
        """Commit a pending enrollment once ``code`` matches its secret.

        On a wrong code the enrollment stays pending and can be retried with
        the same secret until it expires.
        """
        if isinstance(self.store.get_two_factor_state(user_id), TwoFactorEnabled):
            raise TwoFactorStateError("Two-factor authentication is already enabled")
        pending = await self._load_pending(user_id)
        if not pending:
            raise TwoFactorStateError("No pending two-factor setup; start setup again")
        if backup_codes is not None:
            submitted = sorted(normalize_backup_code(c) for c in backup_codes)
            if submitted != sorted(pending.backup_codes):
                raise TwoFactorStateError("Backup codes do not match the current setup")
        await self._ensure_not_locked(user_id)
        if not verify_totp(pending.secret, code):
            await self._record_failure(user_id)
            self.logger.info("two_factor_setup_code_rejected", user_id=user_id)
            raise InvalidTwoFactorCodeError(status_code=400)
        enabled = self.store.enable_two_factor(
            user_id, pending.secret, hash_backup_codes(pending.backup_codes)
        )
        await self._clear_pending(user_id)
        await self._clear_failures(user_id)
        if not enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")
        self.logger.info("two_factor_enabled", user_id=user_id)

    async def verify_login(
        self,
        user_id: int,
        temp_token: str,
        code: str,
        *,
        is_backup_code: bool = False,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginOutcome:
        """Redeem a login challenge with a TOTP or backup code."""
        challenge = await self.auth.take_login_challenge(temp_token)
        if not challenge or challenge.user_id != user_id:
            if challenge:
                await self.auth.restore_login_challenge(challenge)
            raise AuthenticationError("Two-factor challenge expired; log in again")
        # A locked-out user loses the challenge and must log in again
        await self._ensure_not_locked(user_id)
        user = self.store.get_user(user_id)
        state = self.store.get_two_factor_state(user_id)
        if not user or not user.is_active or not isinstance(state, TwoFactorEnabled):
            raise AuthenticationError("Two-factor challenge expired; log in again")

        if is_backup_code:
            ok = self.store.consume_backup_code(
                user_id, hash_token(normalize_backup_code(code))
            )
        else:
            ok = verify_totp(state.secret, code)

        if not ok:
            locked = await self._record_failure(user_id)
            if not locked:
                await self.auth.restore_login_challenge(challenge)
            self.logger.info(
                "two_factor_login_rejected", user_id=user_id, backup=is_backup_code
            )
            raise InvalidTwoFactorCodeError()

        await self._clear_failures(user_id)
        if is_backup_code:
            self.logger.info("backup_code_consumed", user_id=user_id)
        return self.auth.issue_login(user, user_agent=user_agent, ip_addr=ip_addr)

    def _check_current_code(
        self, user_id: int, state: TwoFactorEnabled, code: str, *, allow_backup: bool
    ) -> bool:
        if verify_totp(state.secret, code):
            return True
        if allow_backup and normalize_backup_code(code):
            return self.store.consume_backup_code(
                user_id, hash_token(normalize_backup_code(code))
            )
        return False

    async def disable(self, user_id: int, password: str, code: str) -> None:
        """Turn 2FA off; needs both the account password and a current code."""
        state = self.store.get_two_factor_state(user_id)
        if not isinstance(state, TwoFactorEnabled):
            raise TwoFactorStateError("Two-factor authentication is not enabled")
        await self._ensure_not_locked(user_id)
        # pending_disable: password proven, second factor still outstanding
        if not self.auth.verify_password(user_id, password):
            await self._record_failure(user_id)
            raise PasswordMismatchError()
        if not self._check_current_code(user_id, state, code, allow_backup=True):
            await self._record_failure(user_id)
            raise InvalidTwoFactorCodeError(status_code=400)
        self.store.disable_two_factor(user_id)
        await self._clear_failures(user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    async def regenerate_backup_codes(self, user_id: int, code: str) -> List[str]:
        state = self.store.get_two_factor_state(user_id)
        if not isinstance(state, TwoFactorEnabled):
            raise TwoFactorStateError("Two-factor authentication is not enabled")
        await self._ensure_not_locked(user_id)
        if not verify_totp(state.secret, code):
            await self._record_failure(user_id)
            raise InvalidTwoFactorCodeError(status_code=400)
        codes = generate_backup_codes(self.settings.backup_code_count)
        if not self.store.replace_backup_codes(user_id, hash_backup_codes(codes)):
            raise TwoFactorStateError("Two-factor authentication is not enabled")
        await self._clear_failures(user_id)
        self.logger.info("backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes
