"""
Encrypted secrets in the configuration file.

Passwords may be written as ``enc:<token>`` where the token was produced by
``ldap-rtc-sync --encrypt``. Tokens are Fernet tokens; the key is read from
the LDAP_RTC_SYNC_KEY environment variable and is provisioned outside this tool.
"""

import os
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

KEY_ENV = 'LDAP_RTC_SYNC_KEY'
PREFIX = 'enc:'


class CredentialError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""
    pass


def get_fernet(key: Optional[str] = None) -> Fernet:
    """
    Build the cipher from an explicit key or the environment.

    Raises:
        CredentialError: If no key is available or it is malformed
    """
    key = key or os.getenv(KEY_ENV)
    if not key:
        raise CredentialError(f"No encryption key: set {KEY_ENV}")
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as e:
        raise CredentialError(f"Invalid encryption key in {KEY_ENV}: {e}")


def is_encrypted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def encrypt_secret(plaintext: str, key: Optional[str] = None) -> str:
    """Encrypt a secret for use in the configuration file."""
    token = get_fernet(key).encrypt(plaintext.encode('utf-8'))
    return PREFIX + token.decode('ascii')


def decrypt_secret(value: str, key: Optional[str] = None) -> str:
    """
    Decrypt an ``enc:`` value; other values are returned unchanged.

    Raises:
        CredentialError: If the token does not decrypt with the key
    """
    if not is_encrypted(value):
        return value
    try:
        return get_fernet(key).decrypt(value[len(PREFIX):].encode('ascii')).decode('utf-8')
    except InvalidToken:
        raise CredentialError("Encrypted value does not match the configured key")


def decrypt_secrets(data: Any, key: Optional[str] = None) -> Any:
    """Return a copy of a configuration structure with every ``enc:`` value decrypted."""
    if isinstance(data, dict):
        return {k: decrypt_secrets(v, key) for k, v in data.items()}
    if isinstance(data, list):
        return [decrypt_secrets(v, key) for v in data]
    if is_encrypted(data):
        logger.debug("Decrypting configuration secret")
        return decrypt_secret(data, key)
    return data
