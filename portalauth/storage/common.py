"""Helpers shared by the memory and Postgres stores."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from ipaddress import ip_address
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from portalauth.logging import get_logger

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """Digest used to store one-shot tokens and backup codes.

    Args:
        token: Raw token as handed to the user

    Returns:
        Hex SHA-256 digest
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str], fs_root: Path) -> Fernet:
    """Build the Fernet cipher protecting TOTP secrets at rest.

    Key material comes from the argument, ``MFA_SECRET_KEY``, ``JWT_SECRET``
    or the persisted ``.jwt_secret`` file, in that order. When none exist a
    key is generated and persisted so secrets stay decryptable across
    restarts.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        shared_fs = Path(os.getenv("SHARED_FS_ROOT", "/srv/portalauth"))
        secret_path = shared_fs / ".jwt_secret"
        fallback_path = fs_root / ".jwt_secret"
        for candidate in (secret_path, fallback_path):
            try:
                if candidate.exists():
                    material = candidate.read_text().strip()
                    if material:
                        break
            except OSError:
                continue
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                secret_path.parent.mkdir(parents=True, exist_ok=True)
                secret_path.write_text(generated)
                os.chmod(secret_path, 0o600)
                material = generated
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
    return Fernet(derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        logger.error("mfa_secret_decrypt_failed")
        raise RuntimeError("stored two-factor secret cannot be decrypted") from exc


def parse_ip_address(raw_ip: Any) -> Optional[Any]:
    """Parse IP address from various formats.

    Args:
        raw_ip: Raw IP address value (string, object, or None)

    Returns:
        Parsed IP address object or None
    """
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if stripped:
            try:
                return ip_address(stripped)
            except ValueError:
                return None
        return None
    return raw_ip


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
