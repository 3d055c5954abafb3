from __future__ import annotations

import hmac
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portalauth.logging import get_logger
from portalauth.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_ip_address,
    safe_row_value,
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

_MUTABLE_USER_COLUMNS = {
    "name",
    "phone",
    "role",
    "is_active",
    "email_verified",
    "last_login_at",
}


class PostgresStore:
    """Postgres-backed credential store.

    Writes that must not race (backup-code consumption, refresh rotation,
    2FA enable) take a row lock with ``SELECT ... FOR UPDATE`` inside one
    transaction.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key, self.fs_root)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "portal_user",
            "user_credential",
            "auth_session",
            "user_two_factor",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Install it and rerun scripts/schema.sql."
                )

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        now = utcnow()
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            name=row.get("name"),
            phone=row.get("phone"),
            role=row.get("role") or "client",
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    @staticmethod
    def _row_to_credential(row: Dict[str, Any]) -> UserCredential:
        return UserCredential(
            user_id=int(row["user_id"]),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires_at=row.get("reset_expires_at"),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires_at=row.get("verification_expires_at"),
            last_updated_at=row.get("last_updated_at"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        now = utcnow()
        return Session(
            id=str(row["id"]),
            user_id=int(row["user_id"]),
            created_at=row.get("created_at") or now,
            expires_at=row.get("expires_at") or now,
            user_agent=row.get("user_agent"),
            ip_addr=parse_ip_address(row.get("ip_addr")),
            meta=meta,
        )

    @staticmethod
    def _hash_list(raw: Any) -> List[str]:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return []
        return [str(item) for item in raw or []]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO portal_user (username, email, name, phone, role, is_active, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, email, name, phone, role, is_active, email_verified),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        row["id"],
                        password_hash,
                        password_algo,
                        utcnow() if password_hash else None,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_user WHERE username = %s", (username.strip(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_identifier(self, identifier: str) -> Optional[User]:
        if "@" in identifier:
            return self.get_user_by_email(identifier)
        return self.get_user_by_username(identifier)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM portal_user ORDER BY id LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: int, **fields) -> Optional[User]:
        unknown = set(fields) - _MUTABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        # Column names come from the allow-list above, never from input
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = [*fields.values(), user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE portal_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login(self, user_id: int) -> Optional[User]:
        return self.update_user(user_id, last_login_at=utcnow())

    # credentials
    def get_credential(self, user_id: int) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def set_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_credential
                SET password_hash = %s, password_algo = %s,
                    reset_token_hash = NULL, reset_expires_at = NULL,
                    last_updated_at = now()
                WHERE user_id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def set_reset_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_credential SET reset_token_hash = %s, reset_expires_at = %s
                WHERE user_id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def consume_reset_token(self, token_hash: str) -> Optional[int]:
        # UPDATE ... RETURNING clears the token and reads it in one statement,
        # so two concurrent resets cannot both observe it.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_credential AS c
                SET reset_token_hash = NULL, reset_expires_at = NULL
                FROM (
                    SELECT user_id, reset_expires_at FROM user_credential
                    WHERE reset_token_hash = %s FOR UPDATE
                ) AS prev
                WHERE c.user_id = prev.user_id
                RETURNING c.user_id, prev.reset_expires_at
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        expires_at = safe_row_value(row, "reset_expires_at")
        if expires_at is None or expires_at <= utcnow():
            return None
        return int(row["user_id"])

    def set_verification_token(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_credential
                SET verification_token_hash = %s, verification_expires_at = %s
                WHERE user_id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def consume_verification_token(self, token_hash: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_credential AS c
                SET verification_token_hash = NULL, verification_expires_at = NULL
                FROM (
                    SELECT user_id, verification_expires_at FROM user_credential
                    WHERE verification_token_hash = %s FOR UPDATE
                ) AS prev
                WHERE c.user_id = prev.user_id
                RETURNING c.user_id, prev.verification_expires_at
                """,
                (token_hash,),
            ).fetchone()
            if not row:
                return None
            expires_at = safe_row_value(row, "verification_expires_at")
            if expires_at is None or expires_at <= utcnow():
                return None
            conn.execute(
                "UPDATE portal_user SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                (row["user_id"],),
            )
        return int(row["user_id"])

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
        session = Session.new(user_id, ttl_minutes, user_agent, ip_addr, meta=meta)
        parsed_ip = parse_ip_address(ip_addr)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    user_id,
                    session.created_at,
                    session.expires_at,
                    user_agent,
                    str(parsed_ip) if parsed_ip else None,
                    json.dumps(meta) if meta else None,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s AND expires_at > now()",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (json.dumps(meta), session_id),
            )

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, meta: Dict
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT meta FROM auth_session
                WHERE id = %s AND expires_at > now()
                FOR UPDATE
                """,
                (session_id,),
            ).fetchone()
            if not row:
                return False
            current_meta = row.get("meta") or {}
            if isinstance(current_meta, str):
                current_meta = json.loads(current_meta)
            current = current_meta.get("refresh_jti")
            if not current or not hmac.compare_digest(str(current), expected_jti):
                return False
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (json.dumps(meta), session_id),
            )
        return True

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING *", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_user_sessions(
        self, user_id: int, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s RETURNING *",
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s RETURNING *",
                    (user_id,),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # two-factor
    def get_two_factor_state(self, user_id: int) -> TwoFactorState:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row or not row.get("enabled"):
            return TwoFactorDisabled()
        return TwoFactorEnabled(
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            backup_code_hashes=tuple(self._hash_list(row.get("backup_code_hashes"))),
        )

    def enable_two_factor(
        self, user_id: int, secret: str, backup_code_hashes: Iterable[str]
    ) -> bool:
        hashes = list(backup_code_hashes)
        if not secret or not hashes:
            raise ValueError("enabling two-factor requires a secret and backup codes")
        encrypted = encrypt_secret(self._mfa_cipher, secret)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_two_factor (user_id, secret, enabled, backup_code_hashes, updated_at)
                    VALUES (%s, %s, TRUE, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = TRUE,
                        backup_code_hashes = EXCLUDED.backup_code_hashes,
                        updated_at = now()
                    WHERE user_two_factor.enabled = FALSE
                    RETURNING user_id
                    """,
                    (user_id, encrypted, json.dumps(hashes)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return row is not None

    def disable_two_factor(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM user_two_factor WHERE user_id = %s RETURNING enabled",
                (user_id,),
            ).fetchone()
        return bool(row and row.get("enabled"))

    def replace_backup_codes(self, user_id: int, backup_code_hashes: Iterable[str]) -> bool:
        hashes = list(backup_code_hashes)
        if not hashes:
            raise ValueError("backup code set cannot be empty")
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_two_factor SET backup_code_hashes = %s, updated_at = now()
                WHERE user_id = %s AND enabled = TRUE
                """,
                (json.dumps(hashes), user_id),
            )
        return result.rowcount > 0

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT backup_code_hashes FROM user_two_factor
                WHERE user_id = %s AND enabled = TRUE
                FOR UPDATE
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return False
            remaining = []
            matched = False
            for stored in self._hash_list(row.get("backup_code_hashes")):
                if hmac.compare_digest(stored, code_hash) and not matched:
                    matched = True
                    continue
                remaining.append(stored)
            if not matched:
                return False
            conn.execute(
                "UPDATE user_two_factor SET backup_code_hashes = %s, updated_at = now() WHERE user_id = %s",
                (json.dumps(remaining), user_id),
            )
        return True
