"""Credential Vault — encrypted persistence of session credentials.

Security Note (Threat Model):
    The decrypted session record lives in process memory while the session
    is active. A memory dump of the application process could expose the
    token and secret. This is an accepted limitation; key material itself
    can be kept off the host with ``KeyFileProvider`` on a removable medium.
"""

from .credential_vault import CredentialVault, SESSION_BLOB_KEY
from .crypto import VaultEntry
from .keys import (
    KeyHandle,
    SecureKeyProvider,
    KeyFileProvider,
    EnvMasterKeyProvider,
    SoftwareKeyProvider,
    FallbackKeyProvider,
)
from .storage import PersistentKeyValueStore, MemoryKeyValueStore, FileKeyValueStore
from .migration import LEGACY_KEYS

__all__ = [
    "CredentialVault",
    "SESSION_BLOB_KEY",
    "VaultEntry",
    "KeyHandle",
    "SecureKeyProvider",
    "KeyFileProvider",
    "EnvMasterKeyProvider",
    "SoftwareKeyProvider",
    "FallbackKeyProvider",
    "PersistentKeyValueStore",
    "MemoryKeyValueStore",
    "FileKeyValueStore",
    "LEGACY_KEYS",
]
