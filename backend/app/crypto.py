"""
Encryption of Klaviyo private keys at rest.

Fernet symmetric encryption from the `cryptography` package, keyed by the
ENCRYPTION_KEY env var. Without a key (development) values pass through
unchanged so a local setup needs nothing extra.
"""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from app.config import get_settings

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_plaintext_warning_emitted = False


def _get_fernet() -> Optional[Fernet]:
    """Lazy-init the Fernet instance from the configured key."""
    global _fernet, _plaintext_warning_emitted
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    key = settings.encryption_key
    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _plaintext_warning_emitted:
            logger.warning(
                "ENCRYPTION_KEY not set: Klaviyo private keys will be stored in plaintext. "
                "This is acceptable for local development only."
            )
            _plaintext_warning_emitted = True
        return None

    try:
        _fernet = Fernet(key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _fernet


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    f = _get_fernet()
    if f is None:
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_secret(ciphertext: Optional[str]) -> Optional[str]:
    """Decrypt a stored key. Legacy documents hold plaintext keys, which are returned as-is."""
    if ciphertext is None:
        return None
    f = _get_fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.warning("Stored key is not a Fernet token, treating it as legacy plaintext.")
        return ciphertext


def mask_key(key: Optional[str]) -> str:
    """Masked representation of an API key for display."""
    if not key:
        return ""
    if len(key) <= 12:
        return "••••••••"
    return key[:6] + "•••••••••••••" + key[-4:]
