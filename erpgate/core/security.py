"""
Secrets handling for tenant admin credentials.

Admin passwords are stored as Fernet ciphertext and only decrypted at the
point of use (opening a connection to the tenant instance).
"""

import secrets
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from erpgate.core.config import settings


class EncryptionNotConfigured(RuntimeError):
    pass


@lru_cache(maxsize=1)
def _fernet(key: str) -> Fernet:
    return Fernet(key.encode("utf-8"))


def get_fernet() -> Fernet:
    if not settings.ENCRYPTION_KEY:
        raise EncryptionNotConfigured("ENCRYPTION_KEY is not set")
    return _fernet(settings.ENCRYPTION_KEY)


def encrypt_secret(plaintext: str) -> str:
    return get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    try:
        return get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("Cannot decrypt secret: invalid token or wrong ENCRYPTION_KEY") from e


def generate_admin_password() -> str:
    """32 random bytes, base64url encoded."""
    return secrets.token_urlsafe(32)
