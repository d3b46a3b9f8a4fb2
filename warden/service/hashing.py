from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger

logger = get_logger(__name__)

# Passwords get argon2id defaults; short-lived codes and invitation tokens
# already carry high entropy or a small attempt limit, so a cheaper profile is used.
_password_hasher = PasswordHasher(type=Type.ID)
_code_hasher = PasswordHasher(time_cost=2, memory_cost=19456, parallelism=1, type=Type.ID)

_BACKUP_ALPHABET = "0123456789ABCDEF"


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: str) -> bool:
    if not stored_hash:
        return False
    try:
        return _password_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def password_needs_rehash(stored_hash: str) -> bool:
    try:
        return _password_hasher.check_needs_rehash(stored_hash)
    except InvalidHash:
        return True


def hash_code(code: str) -> str:
    return _code_hasher.hash(code)


def verify_code(stored_hash: Optional[str], code: str) -> bool:
    if not stored_hash:
        return False
    try:
        return _code_hasher.verify(stored_hash, code)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def lookup_digest(key: bytes, value: str) -> str:
    """Deterministic HMAC-SHA256 digest used to find a stored secret by its value."""
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_token(nbytes: int = 32) -> str:
    """Random opaque token, hex encoded."""
    return secrets.token_hex(nbytes)


def generate_numeric_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def generate_backup_code(length: int = 8) -> str:
    return "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(length))


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


class SecretBox:
    """Fernet wrapper for values that must be recoverable (TOTP secrets, invitation links)."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize secret box without key material")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def seal(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def unseal(self, sealed: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(sealed.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.warning("secret_box_unseal_failed")
            return None


__all__ = [
    "SecretBox",
    "generate_backup_code",
    "generate_numeric_code",
    "generate_token",
    "hash_code",
    "hash_password",
    "lookup_digest",
    "normalize_backup_code",
    "password_needs_rehash",
    "verify_code",
    "verify_password",
]
