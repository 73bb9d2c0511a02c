"""
Symmetric encryption for credentials held between registration and approval.
"""
import base64
import hashlib
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_cipher() -> Fernet:
    key = getattr(settings, "ENCRYPTION_KEY", "") or ""
    if not key:
        # Fernet keys are 32 url-safe base64 bytes
        logger.warning("ENCRYPTION_KEY is empty, falling back to a key derived from SECRET_KEY")
        key = base64.urlsafe_b64encode(hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest())
    return Fernet(key.encode("utf-8") if isinstance(key, str) else key)


def encrypt_value(value) -> str:
    if value is None:
        return ""
    return get_cipher().encrypt(str(value).encode("utf-8")).decode("utf-8")


def decrypt_value(token: str) -> str:
    """Return the plaintext, or an empty string when the token is missing or unreadable."""
    if not token:
        return ""
    try:
        plain = get_cipher().decrypt(token.encode("utf-8"))
    except InvalidToken:
        logger.error("Stored credential could not be decrypted with the configured key")
        return ""
    return plain.decode("utf-8")
