"""At-rest encryption for stored credentials.

This module provides:
- Secure key generation
- AES-256-GCM authenticated encryption

Security notes:
- Uses `cryptography` library (well-audited, NIST recommended)
- Keys must be exactly 32 bytes (256 bits)
- Random nonces for encryption (12 bytes for AES-GCM)
- Associated data binds a ciphertext to its purpose
"""

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from qrpair.errors import CryptoError

__all__ = [
    "CryptoError",
    "generate_key",
    "encrypt",
    "decrypt",
]

# Constants
KEY_LENGTH = 32  # 256 bits
NONCE_LENGTH = 12  # 96 bits for AES-GCM
TAG_LENGTH = 16  # 128 bits for AES-GCM tag


def generate_key() -> bytes:
    """Generate a 32-byte cryptographically secure key."""
    return secrets.token_bytes(KEY_LENGTH)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Key must be {KEY_LENGTH} bytes")


def encrypt(key: bytes, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt plaintext using AES-256-GCM.

    Format: nonce (12 bytes) || ciphertext || tag (16 bytes)

    Args:
        key: 32-byte encryption key.
        plaintext: Data to encrypt (can be empty).
        associated_data: Optional data authenticated but not encrypted.

    Returns:
        Encrypted data with prepended nonce.

    Raises:
        ValueError: If key is not 32 bytes.
    """
    _check_key(key)

    nonce = secrets.token_bytes(NONCE_LENGTH)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)


def decrypt(key: bytes, data: bytes, associated_data: bytes | None = None) -> bytes:
    """Decrypt data produced by :func:`encrypt`.

    Raises:
        ValueError: If key is not 32 bytes.
        CryptoError: If the data is truncated, tampered with or was
            encrypted under another key.
    """
    _check_key(key)

    min_length = NONCE_LENGTH + TAG_LENGTH
    if len(data) < min_length:
        raise CryptoError(f"Data too short (minimum {min_length} bytes)")

    nonce = data[:NONCE_LENGTH]
    try:
        return AESGCM(key).decrypt(nonce, data[NONCE_LENGTH:], associated_data)
    except InvalidTag as e:
        raise CryptoError("Decryption failed: authentication tag mismatch") from e
