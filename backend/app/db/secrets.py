"""Credential encryption utilities.

Provider API keys are stored with Fernet symmetric encryption. The key is
derived from the SECRETS_KEY environment variable.
"""

import base64
import hashlib
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken


class SecretsError(Exception):
    """Credential could not be encrypted or decrypted."""

    pass


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    """Get the Fernet cipher.

    The key is derived from SECRETS_KEY. Without it a development key is
    derived from DATABASE_PATH, which must never be relied on in production.
    """
    key_material = os.environ.get("SECRETS_KEY")

    if not key_material:
        db_path = os.environ.get("DATABASE_PATH", "./data/workbench.db")
        key_material = f"dev-secrets-key-{db_path}"

    # Fernet wants 32 url-safe base64 bytes
    key_hash = hashlib.sha256(key_material.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_hash))


def encrypt_secret(value: str) -> str:
    """Encrypt a credential value.

    Args:
        value: The plaintext value

    Returns:
        Fernet token as text
    """
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(encrypted_value: str) -> str:
    """Decrypt a credential value.

    Raises:
        SecretsError: If the token is invalid or was encrypted with another key
    """
    try:
        return _get_fernet().decrypt(encrypted_value.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        raise SecretsError(f"Failed to decrypt secret: {e}") from e
