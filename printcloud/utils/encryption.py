"""
Encryption utilities for Print Cloud.

Provides Fernet-based encryption for device integration credentials
(SNMP communities, basic-auth passwords, API keys, webhook secrets).
Uses the application's SECRET_KEY as the basis for the encryption key.
"""

import base64
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _derive_key(secret_key: str) -> bytes:
    """
    Derive a Fernet-compatible key from the application secret key.
    Uses SHA-256 to create a 32-byte key, then base64 encodes it.
    """
    key_bytes = hashlib.sha256(secret_key.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(key_bytes)


def _get_fernet() -> Fernet:
    """Get a Fernet instance using the application secret key."""
    from config.config import SECRET_KEY
    key = _derive_key(SECRET_KEY)
    return Fernet(key)


def encrypt_credential(plaintext: str) -> str:
    """
    Encrypt a credential string.

    Args:
        plaintext: The credential to encrypt

    Returns:
        Base64-encoded encrypted string, safe for database storage
    """
    if not plaintext:
        return ''

    try:
        fernet = _get_fernet()
        encrypted = fernet.encrypt(plaintext.encode('utf-8'))
        return encrypted.decode('utf-8')
    except Exception as e:
        logger.error(f"Failed to encrypt credential: {e}")
        raise ValueError("Encryption failed") from e


def decrypt_credential(encrypted: str) -> str:
    """
    Decrypt a credential string.

    Raises:
        ValueError: If decryption fails (wrong key, corrupted data, etc.)
    """
    if not encrypted:
        return ''

    try:
        fernet = _get_fernet()
        decrypted = fernet.decrypt(encrypted.encode('utf-8'))
        return decrypted.decode('utf-8')
    except InvalidToken:
        logger.error("Failed to decrypt credential: invalid token (key may have changed)")
        raise ValueError("Decryption failed: invalid token")


def encrypt_credentials(credentials: Optional[Dict[str, Any]]) -> str:
    """Serialize and encrypt a credential payload."""
    if not credentials:
        return ''
    return encrypt_credential(json.dumps(credentials, sort_keys=True))


def decrypt_credentials(encrypted: Optional[str]) -> Dict[str, Any]:
    """Decrypt a credential payload back into a dict.

    An undecryptable payload yields an empty dict so the device fails on its
    own connector auth instead of taking the scheduler down.
    """
    if not encrypted:
        return {}
    try:
        return json.loads(decrypt_credential(encrypted))
    except (ValueError, TypeError) as e:
        logger.error(f"Could not load integration credentials: {e}")
        return {}


def mask_credentials(credentials: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of the payload safe to show in API responses."""
    masked = {}
    for key, value in (credentials or {}).items():
        if key in ('username', 'cert_file', 'key_file', 'ca_file'):
            masked[key] = value
        else:
            masked[key] = '********' if value else ''
    return masked
