"""
Authenticated encryption for credentials at rest.

AES-256-GCM with a key derived per encryption through PBKDF2-HMAC-SHA256
from an installation secret and a fresh random salt. The nonce (iv), salt
and authentication tag are returned separately so they can be stored in
their own columns.
"""

import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.exceptions import ConfigurationError, DecryptionFailedError

KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
MIN_KDF_ITERATIONS = 100_000
DEFAULT_KDF_ITERATIONS = 210_000


@dataclass
class EncryptedPayload:
    """Ciphertext plus everything needed to decrypt it."""
    ciphertext: bytes
    iv: bytes
    salt: bytes
    tag: bytes


def _secret_bytes(secret: Union[str, bytes]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ConfigurationError("secret", "encryption secret must not be empty")
    return secret


def derive_key(secret: Union[str, bytes], salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """Derive a 32-byte AES key from the secret and salt using PBKDF2."""
    if iterations < MIN_KDF_ITERATIONS:
        raise ConfigurationError("kdf_iterations", f"must be at least {MIN_KDF_ITERATIONS}")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(_secret_bytes(secret))


def encrypt(
    plaintext: bytes,
    secret: Union[str, bytes],
    associated_data: Optional[bytes] = None,
    iterations: int = DEFAULT_KDF_ITERATIONS
) -> EncryptedPayload:
    """Encrypt with a fresh salt and a fresh iv."""
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(secret, salt, iterations)

    sealed = AESGCM(key).encrypt(iv, plaintext, associated_data)
    # AESGCM appends the tag to the ciphertext
    return EncryptedPayload(
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        salt=salt,
        tag=sealed[-TAG_LENGTH:],
    )


def decrypt(
    payload: EncryptedPayload,
    secret: Union[str, bytes],
    associated_data: Optional[bytes] = None,
    iterations: int = DEFAULT_KDF_ITERATIONS
) -> bytes:
    """
    Decrypt and verify.

    Raises:
        DecryptionFailedError: on any tag mismatch, tampering or key mismatch.
    """
    if len(payload.tag) != TAG_LENGTH or len(payload.iv) != IV_LENGTH:
        raise DecryptionFailedError("Credential payload has malformed iv or tag")

    key = derive_key(secret, payload.salt, iterations)
    try:
        return AESGCM(key).decrypt(payload.iv, payload.ciphertext + payload.tag, associated_data)
    except InvalidTag:
        raise DecryptionFailedError()
