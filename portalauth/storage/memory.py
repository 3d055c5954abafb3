from __future__ import annotations

import hmac
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from portalauth.logging import get_logger
from portalauth.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_ip_address,
)
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    Session,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorState,
    User,
    UserCredential,
    utcnow,
)

_MUTABLE_USER_FIELDS = {
    "name",
    "phone",
    "role",
    "is_active",
    "email_verified",
    "last_login_at",
}


class MemoryStore:
    """In-process credential store with JSON persistence under ``fs_root``.

    Every mutation happens under a single re-entrant lock, which is what
    makes backup-code consumption and refresh rotation atomic here.
    """

    def __init__(
        self, fs_root: str = "/tmp/portalauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, UserCredential] = {}
        self.sessions: Dict[str, Session] = {}
        # user_id -> {"secret": <fernet token>, "enabled": bool, "backup_code_hashes": [...]}
        self.two_factor: Dict[int, Dict] = {}
        self._user_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so helpers can re-acquire inside an outer operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key, self.fs_root)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_user_id(self) -> int:
        with self._seq_lock:
            user_id = self._user_seq
            self._user_seq += 1
            return user_id

    # users
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
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username.lower():
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=self._next_user_id(),
                username=username,
                email=email,
                name=name,
                phone=phone,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id,
                password_hash=password_hash,
                password_algo=password_algo,
                last_updated_at=utcnow() if password_hash else None,
            )
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == needle), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        needle = username.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == needle), None
            )

    def find_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a login identifier that may be a username or an e-mail."""
        if "@" in identifier:
            return self.get_user_by_email(identifier)
        return self.get_user_by_username(identifier)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)[:limit]

    def update_user(self, user_id: int, **fields) -> Optional[User]:
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def record_login(self, user_id: int) -> Optional[User]:
        return self.update_user(user_id, last_login_at=utcnow())

    # credentials
    def get_credential(self, user_id: int) -> Optional[UserCredential]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if cred is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            cred.password_hash = password_hash
            cred.password_algo = password_algo
            cred.reset_token_hash = None
            cred.reset_expires_at = None
            cred.last_updated_at = utcnow()
            self._persist_state()

    def set_reset_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if cred is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            cred.reset_token_hash = token_hash
            cred.reset_expires_at = expires_at
            self._persist_state()

    def consume_reset_token(self, token_hash: str) -> Optional[int]:
        """Clear a matching reset token and return its user id if still valid."""
        with self._data_lock:
            for cred in self.credentials.values():
                if cred.reset_token_hash and hmac.compare_digest(
                    cred.reset_token_hash, token_hash
                ):
                    expires_at = cred.reset_expires_at
                    cred.reset_token_hash = None
                    cred.reset_expires_at = None
                    self._persist_state()
                    if expires_at is None or expires_at <= utcnow():
                        return None
                    return cred.user_id
            return None

    def set_verification_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if cred is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            cred.verification_token_hash = token_hash
            cred.verification_expires_at = expires_at
            self._persist_state()

    def consume_verification_token(self, token_hash: str) -> Optional[int]:
        with self._data_lock:
            for cred in self.credentials.values():
                if cred.verification_token_hash and hmac.compare_digest(
                    cred.verification_token_hash, token_hash
                ):
                    expires_at = cred.verification_expires_at
                    cred.verification_token_hash = None
                    cred.verification_expires_at = None
                    if expires_at is None or expires_at <= utcnow():
                        self._persist_state()
                        return None
                    user = self.users.get(cred.user_id)
                    if user:
                        user.email_verified = True
                        user.updated_at = utcnow()
                    self._persist_state()
                    return cred.user_id
            return None

    # sessions
    def create_session(
        self,
        user_id: int,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        session = Session.new(
            user_id,
            ttl_minutes,
            user_agent,
            ip_addr,
            meta=meta,
        )
        with self._data_lock:
            self.sessions[session.id] = session
            self._persist_state()
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session and session.expires_at <= utcnow():
                self.sessions.pop(session_id, None)
                self._persist_state()
                return None
            return session

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = meta
            self._persist_state()

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, meta: Dict
    ) -> bool:
        """Swap the session's token metadata only if ``expected_jti`` is current."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.expires_at <= utcnow():
                return False
            current = sess.refresh_jti
            if not current or not hmac.compare_digest(current, expected_jti):
                return False
            sess.meta = meta
            self._persist_state()
            return True

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.pop(session_id, None)
            if session:
                self._persist_state()
            return session

    def revoke_user_sessions(
        self, user_id: int, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            stale = [
                sess
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sess in stale:
                self.sessions.pop(sess.id, None)
            if stale:
                self._persist_state()
            return stale

    # two-factor
    def get_two_factor_state(self, user_id: int) -> TwoFactorState:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.get("enabled"):
                return TwoFactorDisabled()
            return TwoFactorEnabled(
                secret=decrypt_secret(self._mfa_cipher, record["secret"]),
                backup_code_hashes=tuple(record.get("backup_code_hashes") or ()),
            )

    def enable_two_factor(
        self, user_id: int, secret: str, backup_code_hashes: Iterable[str]
    ) -> bool:
        """Persist an enrollment; returns False when 2FA is already enabled."""
        hashes = list(backup_code_hashes)
        if not secret or not hashes:
            raise ValueError("enabling two-factor requires a secret and backup codes")
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            existing = self.two_factor.get(user_id)
            if existing and existing.get("enabled"):
                return False
            self.two_factor[user_id] = {
                "secret": encrypt_secret(self._mfa_cipher, secret),
                "enabled": True,
                "backup_code_hashes": hashes,
                "updated_at": utcnow().isoformat(),
            }
            self._persist_state()
            return True

    def disable_two_factor(self, user_id: int) -> bool:
        with self._data_lock:
            record = self.two_factor.pop(user_id, None)
            if record is None:
                return False
            self._persist_state()
            return bool(record.get("enabled"))

    def replace_backup_codes(self, user_id: int, backup_code_hashes: Iterable[str]) -> bool:
        hashes = list(backup_code_hashes)
        if not hashes:
            raise ValueError("backup code set cannot be empty")
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.get("enabled"):
                return False
            record["backup_code_hashes"] = hashes
            record["updated_at"] = utcnow().isoformat()
            self._persist_state()
            return True

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        """Remove ``code_hash`` from the user's set; True only for the first caller."""
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.get("enabled"):
                return False
            remaining = []
            matched = False
            for stored in record.get("backup_code_hashes") or []:
                # Compare against every entry so timing does not reveal position
                if hmac.compare_digest(stored, code_hash) and not matched:
                    matched = True
                    continue
                remaining.append(stored)
            if not matched:
                return False
            record["backup_code_hashes"] = remaining
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "name": user.name,
            "phone": user.phone,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            email=data["email"],
            name=data.get("name"),
            phone=data.get("phone"),
            role=data.get("role", "client"),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_credential(self, cred: UserCredential) -> dict:
        return {
            "user_id": cred.user_id,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "reset_token_hash": cred.reset_token_hash,
            "reset_expires_at": self._serialize_datetime(cred.reset_expires_at),
            "verification_token_hash": cred.verification_token_hash,
            "verification_expires_at": self._serialize_datetime(
                cred.verification_expires_at
            ),
            "last_updated_at": self._serialize_datetime(cred.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> UserCredential:
        return UserCredential(
            user_id=int(data["user_id"]),
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            reset_token_hash=data.get("reset_token_hash"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            verification_token_hash=data.get("verification_token_hash"),
            verification_expires_at=self._deserialize_datetime(
                data.get("verification_expires_at")
            ),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": str(session.ip_addr) if session.ip_addr is not None else None,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=int(data["user_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=parse_ip_address(data.get("ip_addr")),
            meta=data.get("meta"),
        )

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "user_seq": self._user_seq,
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    self._serialize_credential(c) for c in self.credentials.values()
                ],
                "sessions": [
                    self._serialize_session(s) for s in self.sessions.values()
                ],
                "two_factor": [
                    {"user_id": user_id, **record}
                    for user_id, record in self.two_factor.items()
                ],
            }
            path = self._state_path()
            tmp_path = None
            try:
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
                )
                with os.fdopen(fd, "w") as handle:
                    json.dump(state, handle, indent=2)
                os.replace(tmp_path, path)
            except OSError as exc:
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Avoid exists() to sidestep a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(c["user_id"]): self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.two_factor = {}
        for entry in data.get("two_factor", []):
            record = dict(entry)
            user_id = int(record.pop("user_id"))
            self.two_factor[user_id] = record
        max_user_id = max(self.users.keys(), default=0)
        self._user_seq = max(int(data.get("user_seq", 1)), max_user_id + 1)
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
