"""
Access-token encryption at rest.

Tokens are written with ENCRYPTION_KEY. Keys listed in
ENCRYPTION_KEY_PREVIOUS (comma separated) still decrypt older rows, so the
key can be rotated without forcing every platform to reconnect.
"""

import base64
from functools import lru_cache
from typing import List, Tuple

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

KDF_SALT = b"social_publish_pipeline_salt"
KDF_ITERATIONS = 100000


def _fernet_key(secret: str) -> bytes:
    """Use a 32-char secret as-is; stretch anything else with PBKDF2."""
    if len(secret) == 32:
        return base64.urlsafe_b64encode(secret.encode())
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=KDF_SALT, iterations=KDF_ITERATIONS)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


def _configured_secrets() -> Tuple[str, ...]:
    previous = [item.strip() for item in (settings.ENCRYPTION_KEY_PREVIOUS or "").split(",")]
    secrets: List[str] = [settings.ENCRYPTION_KEY]
    secrets.extend(item for item in previous if item and item != settings.ENCRYPTION_KEY)
    return tuple(secrets)


@lru_cache(maxsize=4)
def _cipher(secrets: Tuple[str, ...]) -> MultiFernet:
    # PBKDF2 derivation is slow; once per key set
    return MultiFernet([Fernet(_fernet_key(secret)) for secret in secrets])


def encrypt_token(token: str) -> str:
    """Encrypt a platform access token with the current key."""
    return _cipher(_configured_secrets()).encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt a stored platform access token with the current or a previous key.

    Raises ValueError when none of the configured keys produced the ciphertext.
    """
    try:
        decrypted = _cipher(_configured_secrets()).decrypt(encrypted_token.encode())
    except InvalidToken as exc:
        raise ValueError("Stored token cannot be decrypted with the configured ENCRYPTION_KEY.") from exc
    return decrypted.decode()


def needs_rotation(encrypted_token: str) -> bool:
    """True when the ciphertext decrypts only with a previous key."""
    try:
        _cipher((settings.ENCRYPTION_KEY,)).decrypt(encrypted_token.encode())
    except InvalidToken:
        return True
    return False


def rotate_token(encrypted_token: str) -> str:
    """Re-encrypt a stored token under the current key."""
    try:
        return _cipher(_configured_secrets()).rotate(encrypted_token.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Stored token cannot be decrypted with any configured key.") from exc
