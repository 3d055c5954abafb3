from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordMismatchError,
    RefreshInvalidError,
    TokenExpiredError,
    ValidationError,
)
from portalauth.storage.common import hash_token
from portalauth.storage.models import (
    Session,
    TwoFactorEnabled,
    TwoFactorState,
    User,
    UserCredential,
)
from portalauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "client",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: int, **fields) -> Optional[User]: ...

    def record_login(self, user_id: int) -> Optional[User]: ...

    def get_credential(self, user_id: int) -> Optional[UserCredential]: ...

    def set_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def set_reset_token(self, user_id: int, token_hash: str, expires_at: datetime) -> None: ...

    def consume_reset_token(self, token_hash: str) -> Optional[int]: ...

    def set_verification_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None: ...

    def consume_verification_token(self, token_hash: str) -> Optional[int]: ...

    def create_session(
        self,
        user_id: int,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def rotate_refresh_jti(self, session_id: str, expected_jti: str, meta: dict) -> bool: ...

    def revoke_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_user_sessions(
        self, user_id: int, *, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    def get_two_factor_state(self, user_id: int) -> TwoFactorState: ...

    def enable_two_factor(
        self, user_id: int, secret: str, backup_code_hashes: Iterable[str]
    ) -> bool: ...

    def disable_two_factor(self, user_id: int) -> bool: ...

    def replace_backup_codes(self, user_id: int, backup_code_hashes: Iterable[str]) -> bool: ...

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool: ...


@dataclass
class Principal:
    """Identity resolved from a verified access token."""

    user_id: int
    role: str
    session_id: Optional[str] = None


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int
    session_id: str
    token_type: str = "bearer"


@dataclass
class LoginOutcome:
    """Either real tokens or a pending second-factor challenge."""

    user: User
    tokens: Optional[IssuedTokens] = None
    temp_token: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.tokens is None


@dataclass
class RegistrationOutcome:
    user: User
    tokens: Optional[IssuedTokens] = None
    verification_token: Optional[str] = None

    @property
    def verification_required(self) -> bool:
        return self.verification_token is not None


@dataclass
class LoginChallenge:
    user_id: int
    expires_at: float
    token_hash: str = field(repr=False, default="")


class AuthService:
    """Password login, JWT issuance/rotation and one-shot account tokens.

    Works against Redis when available and falls back to in-process state
    guarded by ``_state_lock`` otherwise.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        # Protects all in-memory fallback state from concurrent access
        self._state_lock = threading.Lock()
        self._login_challenges: dict[str, LoginChallenge] = {}
        self.revoked_refresh_tokens: dict[str, float] = {}  # jti -> expiry ts
        self._denylisted_access: dict[str, float] = {}  # jti -> expiry ts
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger
        self._last_cleanup = datetime.now(timezone.utc)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def cleanup_expired_states(self) -> int:
        """Drop expired challenges and denylist entries held in memory.

        Returns:
            Number of expired entries cleaned up
        """
        now_ts = time.time()
        cleaned = 0
        with self._state_lock:
            for token_hash in [
                key for key, ch in self._login_challenges.items() if ch.expires_at <= now_ts
            ]:
                self._login_challenges.pop(token_hash, None)
                cleaned += 1
            for registry in (self.revoked_refresh_tokens, self._denylisted_access):
                for jti in [key for key, exp in registry.items() if exp <= now_ts]:
                    registry.pop(jti, None)
                    cleaned += 1
        if cleaned:
            self.logger.debug("auth_state_cleanup", cleaned=cleaned)
        return cleaned

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        now = self._now()
        if now - self._last_cleanup < timedelta(minutes=interval_minutes):
            return 0
        self._last_cleanup = now
        return self.cleanup_expired_states()

    # registration
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> RegistrationOutcome:
        if not self.settings.allow_signup:
            raise ForbiddenError("Registration is disabled")
        pwd_hash, algo = self._hash_password(password)
        require_verification = self.settings.require_email_verification
        user = self.store.create_user(
            username,
            email,
            password_hash=pwd_hash,
            password_algo=algo,
            name=name,
            phone=phone,
            role="client",
            is_active=True,
            email_verified=not require_verification,
        )
        self.logger.info("user_registered", user_id=user.id, verification=require_verification)
        if require_verification:
            token = self.issue_email_verification(user)
            return RegistrationOutcome(user=user, verification_token=token)
        tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        user = self.store.record_login(user.id) or user
        return RegistrationOutcome(user=user, tokens=tokens)

    async def admin_create_user(
        self,
        username: Optional[str],
        email: str,
        password: Optional[str],
        *,
        role: str = "client",
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """Provision an account directly; a null password yields a login-less account.

        Without a ``username`` one is derived from the e-mail's local part.
        """
        if not username:
            username = self._username_from_email(email)
        pwd_hash, algo = self._hash_password(password) if password else (None, None)
        user = self.store.create_user(
            username,
            email,
            password_hash=pwd_hash,
            password_algo=algo,
            name=name,
            phone=phone,
            role=role,
            is_active=True,
            email_verified=True,
        )
        self.logger.info("user_provisioned", user_id=user.id, role=role)
        return user

    # login
    async def login(
        self,
        identifier: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginOutcome:
        self.maybe_cleanup()
        user = self.store.find_user_by_identifier(identifier.strip())
        if not user:
            # Burn a hash verification so unknown users cost the same time
            self._verify_dummy_password(password)
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()
        if not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AccountInactiveError()
        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerifiedError(detail={"email": user.email})
        return await self.complete_password_login(
            user, user_agent=user_agent, ip_addr=ip_addr
        )

    async def complete_password_login(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginOutcome:
        """Finish a login whose first factor is already proven."""
        state = self.store.get_two_factor_state(user.id)
        if isinstance(state, TwoFactorEnabled):
            temp_token = await self._create_login_challenge(user.id)
            self.logger.info("login_two_factor_challenge", user_id=user.id)
            return LoginOutcome(user=user, temp_token=temp_token)
        return self.issue_login(user, user_agent=user_agent, ip_addr=ip_addr)

    def issue_login(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginOutcome:
        tokens = self._start_session(user, user_agent=user_agent, ip_addr=ip_addr)
        user = self.store.record_login(user.id) or user
        self.logger.info("login_succeeded", user_id=user.id, session_id=tokens.session_id)
        return LoginOutcome(user=user, tokens=tokens)

    # second-factor challenge bookkeeping
    async def _create_login_challenge(self, user_id: int) -> str:
        temp_token = secrets.token_urlsafe(32)
        token_hash = hash_token(temp_token)
        ttl = self.settings.two_factor_challenge_ttl_seconds
        expires_at = time.time() + ttl
        if self.cache:
            await self.cache.set_two_factor_challenge(
                token_hash, {"user_id": user_id, "expires_at": expires_at}, ttl
            )
        else:
            with self._state_lock:
                self._login_challenges[token_hash] = LoginChallenge(
                    user_id=user_id, expires_at=expires_at, token_hash=token_hash
                )
        return temp_token

    async def take_login_challenge(self, temp_token: str) -> Optional[LoginChallenge]:
        """Atomically remove a challenge; only one caller can hold it at a time."""
        token_hash = hash_token(temp_token)
        if self.cache:
            data = await self.cache.pop_two_factor_challenge(token_hash)
            if not data:
                return None
            challenge = LoginChallenge(
                user_id=int(data["user_id"]),
                expires_at=float(data["expires_at"]),
                token_hash=token_hash,
            )
        else:
            with self._state_lock:
                challenge = self._login_challenges.pop(token_hash, None)
        if not challenge or challenge.expires_at <= time.time():
            return None
        return challenge

    async def restore_login_challenge(self, challenge: LoginChallenge) -> None:
        """Put back a challenge taken for a failed attempt, keeping its expiry."""
        remaining = int(challenge.expires_at - time.time())
        if remaining <= 0:
            return
        if self.cache:
            await self.cache.set_two_factor_challenge(
                challenge.token_hash,
                {"user_id": challenge.user_id, "expires_at": challenge.expires_at},
                remaining,
            )
        else:
            with self._state_lock:
                self._login_challenges[challenge.token_hash] = challenge

    # tokens
    async def refresh(self, refresh_token: Optional[str]) -> Tuple[User, IssuedTokens]:
        """Exchange a refresh token for a new access/refresh pair.

        The presented token is retired through a compare-and-swap on the
        session, so concurrent refreshes with one token yield one winner.
        """
        if not refresh_token:
            raise RefreshInvalidError("Refresh token missing")
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise RefreshInvalidError("Invalid refresh token")
        jti = payload.get("jti")
        if not jti or await self._is_refresh_revoked(jti):
            raise RefreshInvalidError("Refresh token revoked")
        session_id = payload.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if not session:
            raise RefreshInvalidError("Session expired")
        user = self.store.get_user(session.user_id)
        if not user or payload.get("sub") != user.id:
            raise RefreshInvalidError("Invalid refresh token")
        if not user.is_active:
            await self.revoke(session.id)
            raise RefreshInvalidError("Account is deactivated")
        tokens, meta = self._build_tokens(user, session)
        if not self.store.rotate_refresh_jti(session.id, jti, meta):
            self.logger.warning(
                "refresh_token_reuse_detected", user_id=user.id, session_id=session.id
            )
            raise RefreshInvalidError("Refresh token already used")
        session.meta = meta
        await self._revoke_refresh_token(jti, payload.get("exp"))
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session.id)
        return user, tokens

    async def logout(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Revoke whatever session the presented tokens point at; never raises."""
        session_ids = set()
        for token in (access_token, refresh_token):
            if not token:
                continue
            payload = self._decode_jwt(token, allow_expired=True)
            if payload and payload.get("sid"):
                session_ids.add(str(payload["sid"]))
                if payload.get("token_type") == "refresh" and payload.get("jti"):
                    await self._revoke_refresh_token(payload["jti"], payload.get("exp"))
        for session_id in session_ids:
            try:
                await self.revoke(session_id)
            except Exception as exc:
                # Logout is not an error path for the caller
                self.logger.warning("logout_revoke_failed", session_id=session_id, error=str(exc))
        self.logger.info("logout", sessions=len(session_ids))

    async def revoke(self, session_id: str) -> None:
        """Revoke a session and denylist its outstanding token JTIs."""
        sess = self.store.revoke_session(session_id)
        if not sess or not isinstance(sess.meta, dict):
            return
        meta = sess.meta
        refresh_jti = meta.get("refresh_jti")
        if refresh_jti:
            await self._revoke_refresh_token(refresh_jti, meta.get("refresh_exp"))
        access_jti = meta.get("access_jti")
        access_exp = meta.get("access_exp")
        if access_jti and access_exp:
            await self._denylist_access_token(access_jti, float(access_exp))

    async def revoke_all_user_sessions(
        self, user_id: int, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke all sessions for a user, optionally keeping one active.

        Returns:
            Number of sessions revoked
        """
        revoked = self.store.revoke_user_sessions(
            user_id, except_session_id=except_session_id
        )
        for sess in revoked:
            meta = sess.meta if isinstance(sess.meta, dict) else {}
            if meta.get("refresh_jti"):
                await self._revoke_refresh_token(meta["refresh_jti"], meta.get("refresh_exp"))
            if meta.get("access_jti") and meta.get("access_exp"):
                await self._denylist_access_token(meta["access_jti"], float(meta["access_exp"]))
        if revoked:
            self.logger.info("user_sessions_revoked", user_id=user_id, count=len(revoked))
        return len(revoked)

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Principal:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Not authenticated")
        payload = self._decode_jwt(token, allow_expired=True)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError("Invalid access token")
        if self._is_expired(payload):
            raise TokenExpiredError("Access token expired")
        jti = payload.get("jti")
        if not jti or await self._is_access_denylisted(jti):
            self.logger.info("access_token_denylisted")
            raise AuthenticationError("Access token revoked")
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess:
            raise AuthenticationError("Session ended")
        user = self.store.get_user(sess.user_id)
        if not user or payload.get("sub") != user.id or payload.get("role") != user.role:
            raise AuthenticationError("Invalid access token")
        if not user.is_active:
            raise AccountInactiveError()
        if required_role and not self._role_allows(user.role, required_role):
            raise ForbiddenError("Insufficient permissions")
        return Principal(user_id=user.id, role=user.role, session_id=sess.id)

    def me(self, principal: Principal) -> User:
        user = self.store.get_user(principal.user_id)
        if not user:
            raise AuthenticationError("Not authenticated")
        return user

    # email verification
    def issue_email_verification(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(hours=self.settings.email_verification_ttl_hours)
        self.store.set_verification_token(user.id, hash_token(token), expires_at)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def resend_verification(self, email: str) -> Optional[Tuple[User, str]]:
        """Return (user, token) for unverified accounts; None otherwise.

        Callers report success either way so account existence is not leaked.
        """
        user = self.store.get_user_by_email(email)
        if not user or user.email_verified or not user.is_active:
            return None
        return user, self.issue_email_verification(user)

    async def verify_email(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginOutcome:
        user_id = self.store.consume_verification_token(hash_token(token))
        if user_id is None:
            self.logger.warning("email_verification_invalid_token")
            raise ValidationError("Invalid or expired verification token")
        user = self.store.get_user(user_id)
        if not user:
            raise ValidationError("Invalid or expired verification token")
        self.logger.info("email_verified", user_id=user.id)
        if not user.is_active:
            raise AccountInactiveError()
        return await self.complete_password_login(
            user, user_agent=user_agent, ip_addr=ip_addr
        )

    # password management
    async def request_password_reset(self, email: str) -> Optional[Tuple[User, str]]:
        user = self.store.get_user_by_email(email)
        credential = self.store.get_credential(user.id) if user else None
        if not user or not user.is_active or not credential or not credential.password_hash:
            self.logger.info(
                "password_reset_ignored",
                email_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest(),
            )
            return None
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_reset_token(user.id, hash_token(token), expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        return user, token

    async def complete_password_reset(self, token: str, new_password: str) -> User:
        user_id = self.store.consume_reset_token(hash_token(token))
        user = self.store.get_user(user_id) if user_id is not None else None
        if not user:
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("Invalid or expired reset token")
        pwd_hash, algo = self._hash_password(new_password)
        self.store.set_password(user.id, pwd_hash, algo)
        await self.revoke_all_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> None:
        if not self.verify_password(principal.user_id, current_password):
            raise PasswordMismatchError("Current password is incorrect")
        pwd_hash, algo = self._hash_password(new_password)
        self.store.set_password(principal.user_id, pwd_hash, algo)
        await self.revoke_all_user_sessions(
            principal.user_id, except_session_id=principal.session_id
        )
        self.logger.info("password_changed", user_id=principal.user_id)

    # administration
    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def set_user_active(self, user_id: int, is_active: bool) -> User:
        user = self.store.update_user(user_id, is_active=is_active)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if not is_active:
            await self.revoke_all_user_sessions(user_id)
        self.logger.info("user_active_changed", user_id=user_id, is_active=is_active)
        return user

    async def set_user_role(self, user_id: int, role: str) -> User:
        user = self.store.update_user(user_id, role=role)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        # Outstanding tokens carry the old role claim
        await self.revoke_all_user_sessions(user_id)
        self.logger.info("user_role_changed", user_id=user_id, role=role)
        return user

    async def admin_set_password(self, user_id: int, new_password: str) -> User:
        """Set a user's password on their behalf and end all of their sessions."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        pwd_hash, algo = self._hash_password(new_password)
        self.store.set_password(user_id, pwd_hash, algo)
        await self.revoke_all_user_sessions(user_id)
        self.logger.info("admin_password_set", user_id=user_id)
        return user

    @staticmethod
    def _username_from_email(email: str) -> str:
        local = re.sub(r"[^a-zA-Z0-9_-]", "", email.split("@", 1)[0])[:12]
        return f"{local or 'client'}_{secrets.token_hex(3)}"

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _verify_dummy_password(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        with contextlib.suppress(VerificationError, InvalidHash):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_credential(user_id)
        if not record or not record.password_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._verify_dummy_password(password)
            return False
        if record.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", user_id=user_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # JWT
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str, *, allow_expired: bool = False
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        try:
            float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if not allow_expired and self._is_expired(payload):
            return None
        return payload

    def _is_expired(self, payload: dict[str, Any]) -> bool:
        return float(payload["exp"]) <= time.time() - self._clock_skew_leeway.total_seconds()

    def _start_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedTokens:
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        tokens, meta = self._build_tokens(user, session)
        session.meta = meta
        self.store.set_session_meta(session.id, meta)
        return tokens

    def _build_tokens(self, user: User, session: Session) -> Tuple[IssuedTokens, dict]:
        now = self._now()
        access_exp = int(
            (now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
        )
        # Refresh tokens never outlive their session
        refresh_exp = int(
            min(
                now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
                session.expires_at,
            ).timestamp()
        )
        access_jti = str(uuid.uuid4())
        refresh_jti = str(uuid.uuid4())
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "role": user.role,
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {**base, "token_type": "access", "jti": access_jti, "exp": access_exp}
        )
        refresh_token = self._encode_jwt(
            {**base, "token_type": "refresh", "jti": refresh_jti, "exp": refresh_exp}
        )
        meta = dict(session.meta or {})
        meta.update(
            {
                "access_jti": access_jti,
                "access_exp": access_exp,
                "refresh_jti": refresh_jti,
                "refresh_exp": refresh_exp,
            }
        )
        tokens = IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            session_id=session.id,
        )
        return tokens, meta

    async def _revoke_refresh_token(self, jti: str, exp: Any = None) -> None:
        if isinstance(exp, (int, float)):
            expires_at = float(exp)
        else:
            expires_at = time.time() + self.settings.refresh_token_ttl_minutes * 60
        with self._state_lock:
            self.revoked_refresh_tokens[jti] = expires_at
        if self.cache:
            ttl = max(int(expires_at - time.time()), 1)
            try:
                await self.cache.mark_refresh_revoked(jti, ttl)
            except Exception as exc:
                logger.warning("cache_revoked_refresh_token_failed", error=str(exc))

    async def _is_refresh_revoked(self, jti: str) -> bool:
        with self._state_lock:
            if jti in self.revoked_refresh_tokens:
                return True
        if self.cache:
            try:
                return await self.cache.is_refresh_revoked(jti)
            except Exception as exc:
                # Fail closed: a Redis outage forces re-login rather than
                # accepting a possibly revoked token.
                logger.warning(
                    "check_revoked_refresh_token_failed_defaulting_to_revoked",
                    error=str(exc),
                )
                return True
        return False

    async def _denylist_access_token(self, jti: str, exp: float) -> None:
        ttl = int(exp - time.time())
        if ttl <= 0:
            return
        with self._state_lock:
            self._denylisted_access[jti] = exp
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except Exception as exc:
                self.logger.warning("access_token_denylist_failed", error=str(exc))

    async def _is_access_denylisted(self, jti: str) -> bool:
        with self._state_lock:
            if jti in self._denylisted_access:
                return True
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except Exception as exc:
                # Session lookup still gates the token, so fail open here
                self.logger.warning("denylist_check_failed", error=str(exc))
        return False

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required in {"admin", "client"}

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
