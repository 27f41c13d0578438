"""
Credential vault: symmetric encryption of secrets at rest.

Used for OAuth access/refresh tokens, national ID numbers pulled from the
payroll provider, and the OAuth `state` parameter.

Envelope format (a plain string, safe for TEXT columns):

    "<iv hex>:<ciphertext hex>"

The IV (a 96-bit AES-GCM nonce) is generated fresh for every encrypt() call
and travels with the ciphertext. GCM appends its 16-byte tag to the
ciphertext, so a tampered or foreign envelope fails to decrypt instead of
returning garbage.

The key is injected explicitly. There is no module-level key: build one
CredentialVault at startup and hand it to whoever needs it.
"""
import os
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_BYTES = 32
IV_BYTES = 12
ENVELOPE_SEPARATOR = ":"


# ── Exceptions ────────────────────────────────────────────────────────────────

class CryptoError(RuntimeError):
    """Raised when the vault key is absent or malformed (fatal at startup)."""


class DecryptionError(CryptoError):
    """Raised when an envelope is malformed or fails authentication."""


# ── Envelope ──────────────────────────────────────────────────────────────────

class Envelope(NamedTuple):
    iv: bytes
    ciphertext: bytes


def parse_envelope(token: str) -> Envelope:
    """Split an envelope string into its (iv, ciphertext) parts.

    Raises:
        DecryptionError: if the string is not a well-formed envelope.
    """
    if not token or ENVELOPE_SEPARATOR not in token:
        raise DecryptionError("Malformed credential envelope")
    iv_hex, ct_hex = token.split(ENVELOPE_SEPARATOR, 1)
    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ct_hex)
    except ValueError as exc:
        raise DecryptionError("Malformed credential envelope") from exc
    if len(iv) != IV_BYTES or not ciphertext:
        raise DecryptionError("Malformed credential envelope")
    return Envelope(iv=iv, ciphertext=ciphertext)


def generate_key() -> str:
    """Return a new random key as 64 hex characters."""
    return os.urandom(KEY_BYTES).hex()


# ── Main class ────────────────────────────────────────────────────────────────

class CredentialVault:
    """
    AES-256-GCM encrypt/decrypt with a per-call random IV.

    Usage:
        vault = CredentialVault(settings.encryption_key)
        token = vault.encrypt("access-token")
        vault.decrypt(token)  # → "access-token"
    """

    def __init__(self, key_hex: str):
        """
        Args:
            key_hex: 32-byte key encoded as 64 hex characters.

        Raises:
            CryptoError: if the key is missing or not 32 bytes of hex.
        """
        if not key_hex:
            raise CryptoError(
                "ENCRYPTION_KEY is not set. "
                "Generate one with `python -m paysync keygen`."
            )
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError as exc:
            raise CryptoError("ENCRYPTION_KEY must be hex-encoded") from exc
        if len(key) != KEY_BYTES:
            raise CryptoError(
                f"ENCRYPTION_KEY must be {KEY_BYTES} bytes "
                f"({KEY_BYTES * 2} hex chars), got {len(key)} bytes"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return its envelope."""
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return iv.hex() + ENVELOPE_SEPARATOR + ciphertext.hex()

    def decrypt(self, token: str) -> str:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            DecryptionError: if the envelope is malformed, was produced with a
                different key, or has been tampered with.
        """
        envelope = parse_envelope(token)
        try:
            plaintext = self._aead.decrypt(envelope.iv, envelope.ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Credential envelope failed authentication") from exc
        return plaintext.decode("utf-8")
