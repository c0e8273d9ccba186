"""Cryptographic primitives.

Secure identifiers, SHA-256 lookup hashes, AES-256-GCM encryption and
constant-time secret comparison.  Randomness always comes from the
:mod:`secrets` module; there is no pseudo-random fallback.

Requires the ``cryptography`` package for authenticated encryption.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from smcp_gateway.constants import (
    API_KEY_BYTES,
    API_KEY_PREFIX,
    CORRELATION_ID_BYTES,
    SESSION_ID_BYTES,
    SESSION_PREFIX,
)

KEY_SIZE_BYTES = 32  # AES-256
NONCE_SIZE_BYTES = 12  # 96-bit GCM nonce


@dataclass(frozen=True)
class EncryptedPayload:
    """Hex-encoded ciphertext (with GCM tag) and the nonce used to produce it."""

    encrypted: str
    iv: str


class DecryptionError(Exception):
    """Raised when a payload fails authentication or cannot be decoded."""


# ── Identifiers ─────────────────────────────────────────────────────────


def generate_secure_id(length: int = 32) -> str:
    """Return ``2 * length`` lowercase hex characters from a CSPRNG."""
    if length < 1:
        raise ValueError("length must be positive")
    return secrets.token_hex(length)


def generate_correlation_id() -> str:
    """Return a request correlation id: ``req_<epochMillis>_<32 hex>``."""
    return f"req_{int(time.time() * 1000)}_{generate_secure_id(CORRELATION_ID_BYTES)}"


def generate_session_id(tenant_id: str) -> str:
    """Return a tenant-scoped session id: ``sess_<tenant>_<48 hex>``."""
    return f"{SESSION_PREFIX}_{tenant_id}_{generate_secure_id(SESSION_ID_BYTES)}"


def generate_api_key(tenant_id: str) -> str:
    """Return a tenant-scoped API key: ``smcp_<tenant>_<64 hex>``."""
    return f"{API_KEY_PREFIX}_{tenant_id}_{generate_secure_id(API_KEY_BYTES)}"


# ── Hashing / comparison ────────────────────────────────────────────────


def hash_string(value: str) -> str:
    """SHA-256 hex digest of *value*, used to derive lookup keys from secrets."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two secrets without leaking the first mismatching position.

    Returns ``False`` for different lengths.  Only use this for secrets,
    not for tenant ids or other public fields.
    """
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ── Symmetric encryption ────────────────────────────────────────────────


def generate_encryption_key() -> bytes:
    """Return a fresh random 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE_BYTES * 8)


def import_encryption_key(key_bytes: bytes) -> bytes:
    """Validate raw key material for :func:`encrypt_data` / :func:`decrypt_data`."""
    if not isinstance(key_bytes, (bytes, bytearray)) or len(key_bytes) != KEY_SIZE_BYTES:
        raise ValueError(f"Encryption key must be exactly {KEY_SIZE_BYTES} bytes")
    return bytes(key_bytes)


def encrypt_data(data: str, key: bytes) -> EncryptedPayload:
    """Encrypt *data* with AES-256-GCM under a fresh random nonce."""
    nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
    ciphertext = AESGCM(import_encryption_key(key)).encrypt(nonce, data.encode("utf-8"), None)
    return EncryptedPayload(encrypted=ciphertext.hex(), iv=nonce.hex())


def decrypt_data(encrypted_hex: str, iv_hex: str, key: bytes) -> str:
    """Decrypt a payload produced by :func:`encrypt_data`.

    Raises :class:`DecryptionError` if the ciphertext was tampered with,
    the key is wrong, or the inputs are not valid hex.
    """
    try:
        ciphertext = bytes.fromhex(encrypted_hex)
        nonce = bytes.fromhex(iv_hex)
        plaintext = AESGCM(import_encryption_key(key)).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptionError("Unable to decrypt payload") from exc
    return plaintext.decode("utf-8")
