"""
Fernet encryption for provider credentials stored on an organization
(Vapi private keys). Key comes from ENCRYPTION_KEY.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from apex.config import get_settings

logger = logging.getLogger(__name__)


def _get_fernet() -> Optional[Fernet]:
    key = get_settings().encryption_key
    if not key:
        return None
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a credential for storage.
    Without ENCRYPTION_KEY the value is stored as-is (development only).
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        logger.warning("ENCRYPTION_KEY not configured - storing credential unencrypted")
        return plaintext
    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(stored: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored credential.
    Values that are not Fernet tokens are treated as legacy plaintext.
    """
    if not stored:
        return stored

    fernet = _get_fernet()
    if fernet is None:
        return stored

    try:
        return fernet.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.debug("Stored credential is not a Fernet token - using as plaintext")
        return stored
