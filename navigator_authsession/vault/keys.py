"""
Vault Keys — pluggable key provisioning for the credential vault.

Providers:
- ``KeyFileProvider``: raw 32-byte key kept in a protected file, typically on
  a removable or hardware-backed medium. Preferred when available.
- ``EnvMasterKeyProvider``: versioned master keys from the environment
  (``AUTHSESSION_MASTER_KEY_v{N}``).
- ``SoftwareKeyProvider``: key derived with HKDF from a device secret.
- ``FallbackKeyProvider``: chains providers, first available wins.

Callers of the vault never know which provider is in effect; the key id
stored next to each blob is enough to find the right key on load.

Security Note:
    Never log key material. Only log key ids.
"""
import os
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union, runtime_checkable

from ..conf import load_master_keys
from ..errors import KeyUnavailable
from .crypto import KEY_LENGTH, derive_key

logger = logging.getLogger("navigator.authsession.vault")


def key_fingerprint(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


@dataclass(frozen=True)
class KeyHandle:
    """A usable encryption key and the id stored alongside its blobs."""

    key_id: str
    key: bytes = field(repr=False)


@runtime_checkable
class SecureKeyProvider(Protocol):

    def get_or_create_key(self) -> KeyHandle:
        """Return the key new blobs are encrypted with.

        Raises:
            KeyUnavailable: If the provider cannot supply a key.
        """
        ...

    def get_key(self, key_id: str) -> KeyHandle:
        """Return the key with the given id, for decryption.

        Raises:
            KeyUnavailable: If this provider does not hold that key.
        """
        ...


class KeyFileProvider:
    """Key stored as 32 raw bytes in a file with owner-only permissions."""

    def __init__(self, path: str, create: bool = False):
        self._path = os.path.abspath(os.path.expanduser(path))
        self._create = create

    def _read(self) -> bytes:
        try:
            with open(self._path, "rb") as f:
                key = f.read()
        except FileNotFoundError:
            raise KeyUnavailable(f"Key file not found at {self._path!r}") from None
        except OSError as err:
            raise KeyUnavailable(f"Key file unreadable: {err}") from err
        if len(key) != KEY_LENGTH:
            raise KeyUnavailable(
                f"Key file must hold exactly {KEY_LENGTH} bytes, got {len(key)}"
            )
        return key

    def _generate(self) -> bytes:
        key = secrets.token_bytes(KEY_LENGTH)
        directory = os.path.dirname(self._path)
        try:
            os.makedirs(directory, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
        except FileExistsError:
            # created concurrently
            return self._read()
        except OSError as err:
            raise KeyUnavailable(f"Cannot create key file: {err}") from err
        logger.info("Created vault key file (key_id=file:%s)", key_fingerprint(key))
        return key

    def get_or_create_key(self) -> KeyHandle:
        try:
            key = self._read()
        except KeyUnavailable:
            if not self._create:
                raise
            key = self._generate()
        return KeyHandle(key_id=f"file:{key_fingerprint(key)}", key=key)

    def get_key(self, key_id: str) -> KeyHandle:
        key = self._read()
        handle = KeyHandle(key_id=f"file:{key_fingerprint(key)}", key=key)
        if handle.key_id != key_id:
            raise KeyUnavailable(f"Key {key_id} not held by key file")
        return handle


class EnvMasterKeyProvider:
    """Versioned master keys from ``AUTHSESSION_MASTER_KEY_v{N}``.

    The active version is the highest one unless given explicitly. The
    vault key for each version is derived with HKDF so the raw master key
    is never used directly.
    """

    def __init__(
        self,
        master_keys: Optional[dict[int, bytes]] = None,
        active_key_id: Optional[int] = None
    ):
        self._master_keys = master_keys
        self._active_key_id = active_key_id

    def _keys(self) -> dict[int, bytes]:
        if self._master_keys is None:
            try:
                self._master_keys = load_master_keys()
            except ValueError as err:
                raise KeyUnavailable(str(err)) from err
        return self._master_keys

    def _handle(self, version: int) -> KeyHandle:
        keys = self._keys()
        if version not in keys:
            raise KeyUnavailable(f"Master key version {version} not available")
        derived = derive_key(keys[version], f"authsession-vault-v{version}")
        return KeyHandle(key_id=f"env:v{version}", key=derived)

    def get_or_create_key(self) -> KeyHandle:
        keys = self._keys()
        if not keys:
            raise KeyUnavailable("No master keys found in environment")
        version = self._active_key_id if self._active_key_id is not None else max(keys)
        return self._handle(version)

    def get_key(self, key_id: str) -> KeyHandle:
        if not key_id.startswith("env:v"):
            raise KeyUnavailable(f"Key {key_id} is not an environment key")
        try:
            version = int(key_id[len("env:v"):])
        except ValueError:
            raise KeyUnavailable(f"Malformed key id {key_id}") from None
        return self._handle(version)


class SoftwareKeyProvider:
    """Key derived from a device secret; the always-available fallback."""

    def __init__(self, device_secret: Union[str, bytes]):
        if isinstance(device_secret, str):
            device_secret = device_secret.encode("utf-8")
        if not device_secret:
            raise ValueError("device_secret cannot be empty")
        key = derive_key(device_secret, "authsession-software-key")
        self._handle = KeyHandle(key_id=f"soft:{key_fingerprint(key)}", key=key)

    def get_or_create_key(self) -> KeyHandle:
        return self._handle

    def get_key(self, key_id: str) -> KeyHandle:
        if key_id != self._handle.key_id:
            raise KeyUnavailable(f"Key {key_id} not derived from this device")
        return self._handle


class FallbackKeyProvider:
    """Try providers in order; the first one able to supply a key wins."""

    def __init__(self, *providers: SecureKeyProvider):
        if not providers:
            raise ValueError("FallbackKeyProvider needs at least one provider")
        self._providers = providers

    def get_or_create_key(self) -> KeyHandle:
        errors = []
        for provider in self._providers:
            try:
                return provider.get_or_create_key()
            except KeyUnavailable as err:
                logger.debug(
                    "Key provider %s unavailable: %s",
                    type(provider).__name__, err,
                )
                errors.append(str(err))
        raise KeyUnavailable("No key provider available: " + "; ".join(errors))

    def get_key(self, key_id: str) -> KeyHandle:
        for provider in self._providers:
            try:
                return provider.get_key(key_id)
            except KeyUnavailable:
                continue
        raise KeyUnavailable(f"Key {key_id} not held by any provider")
