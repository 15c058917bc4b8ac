"""
CredentialVault — encrypted persistence of the session record.

Provides the public API of the vault:
- ``persist(record)`` — encrypt and atomically overwrite the stored session
- ``load()`` — decrypt the stored session (migrating the legacy layout first)
- ``clear()`` — remove the stored session and drop the in-memory copy

Failures never propagate: an encryption failure leaves the previous blob in
place and returns False, an unreadable blob loads as "no session".

Security Note:
    Never log token, secret or ciphertext values. Only log key ids and
    operations.
"""
import logging
import threading
from typing import Optional

from pydantic import ValidationError

from ..errors import CryptoFailure
from ..records import SessionRecord
from .crypto import (
    VaultEntry,
    encrypt_entry,
    decrypt_entry,
    serialize_record,
    deserialize_record,
)
from .keys import SecureKeyProvider
from .migration import LEGACY_KEYS, has_legacy_session, migrate_legacy_session
from .storage import PersistentKeyValueStore

logger = logging.getLogger("navigator.authsession.vault")

SESSION_BLOB_KEY = "session.vault"


class CredentialVault:
    """Encrypted store for exactly one session record.

    All methods block on storage and crypto; callers running on an event
    loop should dispatch them with ``asyncio.to_thread``. Vault operations
    are serialized with an internal lock so a ``clear`` can never interleave
    with half of a ``persist``.
    """

    def __init__(
        self,
        store: PersistentKeyValueStore,
        key_provider: SecureKeyProvider,
    ):
        self._store = store
        self._keys = key_provider
        self._lock = threading.RLock()
        self._record: Optional[SessionRecord] = None
        self.last_error: Optional[Exception] = None

    @property
    def record(self) -> Optional[SessionRecord]:
        """Last record persisted or loaded by this vault."""
        return self._record

    def _fail(self, operation: str, err: Exception) -> None:
        self.last_error = err
        logger.error("Vault %s failed: %s", operation, err)

    # ------------------------------------------------------------------
    # Encrypted layout
    # ------------------------------------------------------------------

    def _write(self, record: SessionRecord) -> bool:
        try:
            handle = self._keys.get_or_create_key()
            entry = encrypt_entry(
                serialize_record(record.to_canonical()),
                handle.key_id,
                handle.key,
            )
        except CryptoFailure as err:
            self._fail("persist", err)
            return False
        try:
            self._store.put(SESSION_BLOB_KEY, entry.to_bytes())
        except OSError as err:
            self._fail("persist", err)
            return False
        self._record = record
        self.last_error = None
        logger.debug("Vault persist: key_id=%s", entry.key_id)
        return True

    def _read(self) -> Optional[SessionRecord]:
        blob = self._store.get(SESSION_BLOB_KEY)
        if not blob:
            return None
        try:
            entry = VaultEntry.from_bytes(blob)
            handle = self._keys.get_key(entry.key_id)
            fields = deserialize_record(decrypt_entry(entry, handle.key))
            return SessionRecord(**fields)
        except CryptoFailure as err:
            self._fail("load", err)
            return None
        except ValidationError as err:
            self._fail(
                "load",
                CryptoFailure(f"stored session is invalid: {err.error_count()} error(s)"),
            )
            return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def persist(self, record: SessionRecord) -> bool:
        """Encrypt and store a record, replacing the previous one.

        Returns:
            True on success; False if encryption or storage failed, in which
            case the previously stored blob is untouched.
        """
        with self._lock:
            if not self._write(record):
                return False
            try:
                if has_legacy_session(self._store):
                    # a fresh session supersedes any leftover plaintext
                    self._store.remove_many(LEGACY_KEYS)
            except OSError as err:
                logger.warning("Vault could not drop legacy keys: %s", err)
            return True

    def load(self) -> Optional[SessionRecord]:
        """Return the stored record, or None if absent or unreadable."""
        with self._lock:
            try:
                if has_legacy_session(self._store):
                    logger.info("Vault found legacy session layout, migrating")
                    record = migrate_legacy_session(
                        self._store, self._write, self._read
                    )
                else:
                    record = self._read()
            except OSError as err:
                self._fail("load", err)
                record = None
            self._record = record
            return record

    def clear(self) -> None:
        """Remove the stored session. Safe to call repeatedly."""
        with self._lock:
            self._record = None
            try:
                self._store.remove(SESSION_BLOB_KEY)
            except OSError as err:
                self._fail("clear", err)
                return
        logger.debug("Vault cleared")
