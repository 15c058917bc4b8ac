"""
Vault Crypto Core — Key derivation, blob encryption and record serialization.

Blob layout of a ``VaultEntry``:
    [cipher 1B][key_id length 1B][key_id utf-8][nonce 12B][encrypted_payload + tag 16B]

The key id is bound as AEAD associated data, so a blob cannot be replayed
under another key reference.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import logging
from dataclasses import dataclass
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..errors import CryptoFailure

logger = logging.getLogger("navigator.authsession.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256

CIPHER_AESGCM = 0x01
CIPHER_CHACHA20 = 0x02

_CIPHERS = {
    CIPHER_AESGCM: AESGCM,
    CIPHER_CHACHA20: ChaCha20Poly1305,
}

RECORD_FIELDS = frozenset({"token", "secret", "expiration_time", "ucid", "gmid"})


def _get_cipher_id() -> int:
    """Return the cipher id based on AUTHSESSION_CIPHER_BACKEND env var."""
    backend = os.environ.get("AUTHSESSION_CIPHER_BACKEND", "aesgcm").lower()
    if backend == "chacha20":
        return CIPHER_CHACHA20
    return CIPHER_AESGCM


# Resolved once at module load; decryption reads the cipher from the blob.
CIPHER_ID = _get_cipher_id()


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (master key or device secret bytes).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: the same seed must yield the same key
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# Vault entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VaultEntry:
    """Encrypted session blob plus the id of the key it was sealed with."""

    cipher_id: int
    key_id: str
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        key_id = self.key_id.encode("utf-8")
        return (
            bytes([self.cipher_id, len(key_id)])
            + key_id
            + self.nonce
            + self.ciphertext
        )

    @classmethod
    def from_bytes(cls, blob: bytes) -> "VaultEntry":
        """Parse a stored blob.

        Raises:
            CryptoFailure: If the blob is truncated or uses an unknown cipher.
        """
        if len(blob) < 2:
            raise CryptoFailure("vault blob too short")
        cipher_id, key_id_len = blob[0], blob[1]
        if cipher_id not in _CIPHERS:
            raise CryptoFailure(f"unknown cipher id {cipher_id}")
        header = 2 + key_id_len
        _min = header + NONCE_SIZE + TAG_SIZE
        if len(blob) < _min:
            raise CryptoFailure(
                f"vault blob too short: {len(blob)} bytes (minimum {_min})"
            )
        try:
            key_id = blob[2:header].decode("utf-8")
        except UnicodeDecodeError as err:
            raise CryptoFailure("vault blob key id is not utf-8") from err
        return cls(
            cipher_id=cipher_id,
            key_id=key_id,
            nonce=blob[header:header + NONCE_SIZE],
            ciphertext=blob[header + NONCE_SIZE:],
        )


def encrypt_entry(plaintext: bytes, key_id: str, key: bytes) -> VaultEntry:
    """Seal plaintext with the given key.

    Raises:
        CryptoFailure: If the key is unusable.
    """
    if len(key_id.encode("utf-8")) > 255:
        raise CryptoFailure("key id too long")
    try:
        cipher = _CIPHERS[CIPHER_ID](key)
        nonce = os.urandom(NONCE_SIZE)
        ct = cipher.encrypt(nonce, plaintext, key_id.encode("utf-8"))
    except (ValueError, TypeError) as err:
        raise CryptoFailure(f"encryption failed: {err}") from err
    return VaultEntry(
        cipher_id=CIPHER_ID, key_id=key_id, nonce=nonce, ciphertext=ct
    )


def decrypt_entry(entry: VaultEntry, key: bytes) -> bytes:
    """Open a vault entry.

    Raises:
        CryptoFailure: If the key is wrong or the blob was tampered with.
    """
    try:
        cipher = _CIPHERS[entry.cipher_id](key)
        return cipher.decrypt(
            entry.nonce, entry.ciphertext, entry.key_id.encode("utf-8")
        )
    except InvalidTag as err:
        raise CryptoFailure("vault blob failed authentication") from err
    except (ValueError, TypeError) as err:
        raise CryptoFailure(f"decryption failed: {err}") from err


# ---------------------------------------------------------------------------
# Record serialization
# ---------------------------------------------------------------------------

def serialize_record(fields: dict[str, Any]) -> bytes:
    """Serialize the canonical record field set with sorted keys."""
    return orjson.dumps(fields, option=orjson.OPT_SORT_KEYS)


def deserialize_record(data: bytes) -> dict[str, Any]:
    """Parse serialized record fields.

    Raises:
        CryptoFailure: If the plaintext is not a record field set.
    """
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise CryptoFailure("decrypted session is not valid JSON") from err
    if not isinstance(parsed, dict) or not RECORD_FIELDS.issuperset(parsed):
        raise CryptoFailure("decrypted session has an unexpected field set")
    return parsed
