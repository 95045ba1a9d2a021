"""
Utility modules for Print Cloud

Contains credential encryption and rate limiting helpers.
"""

from printcloud.utils.encryption import (
    encrypt_credential,
    decrypt_credential,
    encrypt_credentials,
    decrypt_credentials,
    mask_credentials,
)

from printcloud.utils.rate_limiting import (
    get_ip_for_ratelimit,
    handle_rate_limit_exceeded,
    RATE_LIMITS,
)


__all__ = [
    # Encryption
    'encrypt_credential',
    'decrypt_credential',
    'encrypt_credentials',
    'decrypt_credentials',
    'mask_credentials',
    # Rate limiting
    'get_ip_for_ratelimit',
    'handle_rate_limit_exceeded',
    'RATE_LIMITS',
]
