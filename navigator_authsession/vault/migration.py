"""
Vault Migration — move a pre-encryption session into the encrypted layout.

The legacy layout stores the session as flat, unencrypted keys. Migration
order:

1. read every legacy field;
2. write the record through the encrypted path;
3. read the new blob back and check it decrypts to the same record;
4. delete every legacy key in one batch.

A crash before step 4 leaves the legacy keys in place and the next load
migrates again, overwriting the blob with the same record. A crash after
step 4 leaves only the verified blob. There is no point at which both
copies are gone.

Security Note:
    Never log token or secret values.
"""
import logging
from typing import Callable, Optional

from pydantic import ValidationError

from ..records import SessionRecord
from .storage import PersistentKeyValueStore

logger = logging.getLogger("navigator.authsession.vault")

LEGACY_TOKEN_KEY = "session.Token"
LEGACY_SECRET_KEY = "session.Secret"
LEGACY_EXPIRATION_KEY = "session.ExpirationTime"
LEGACY_UCID_KEY = "ucid"
LEGACY_GMID_KEY = "gmid"

LEGACY_KEYS = (
    LEGACY_TOKEN_KEY,
    LEGACY_SECRET_KEY,
    LEGACY_EXPIRATION_KEY,
    LEGACY_UCID_KEY,
    LEGACY_GMID_KEY,
    "lastLoginProvider",
    "tsOffset",
)


def _text(store: PersistentKeyValueStore, key: str) -> Optional[str]:
    raw = store.get(key)
    if raw is None:
        return None
    value = raw.decode("utf-8", errors="strict").strip()
    return value or None


def has_legacy_session(store: PersistentKeyValueStore) -> bool:
    """True when the flat pre-encryption layout holds a session token."""
    return bool(store.get(LEGACY_TOKEN_KEY))


def read_legacy_record(store: PersistentKeyValueStore) -> Optional[SessionRecord]:
    """Reconstruct a record from the flat legacy keys.

    Returns:
        The record, or None if the legacy fields are incomplete or unreadable.
    """
    try:
        token = _text(store, LEGACY_TOKEN_KEY)
        secret = _text(store, LEGACY_SECRET_KEY)
        expiration = _text(store, LEGACY_EXPIRATION_KEY)
        return SessionRecord(
            token=token or "",
            secret=secret or "",
            expiration_time=int(expiration) if expiration else 0,
            ucid=_text(store, LEGACY_UCID_KEY),
            gmid=_text(store, LEGACY_GMID_KEY),
        )
    except (UnicodeDecodeError, ValueError, ValidationError) as err:
        logger.error("Legacy session is unreadable: %s", type(err).__name__)
        return None


def migrate_legacy_session(
    store: PersistentKeyValueStore,
    write: Callable[[SessionRecord], bool],
    read_back: Callable[[], Optional[SessionRecord]],
) -> Optional[SessionRecord]:
    """Migrate the legacy layout into the encrypted one.

    Args:
        store: Store holding the legacy keys.
        write: Encrypts and stores a record; returns False on failure.
        read_back: Decrypts the stored blob, or None if unreadable.

    Returns:
        The migrated record (also when the encrypted write failed and the
        legacy keys were kept for a later attempt), or None if the legacy
        session was unusable.
    """
    record = read_legacy_record(store)
    if record is None:
        # nothing recoverable: drop the unreadable plaintext
        store.remove_many(LEGACY_KEYS)
        return None

    if not write(record):
        logger.error("Legacy migration: encrypted write failed, legacy keys kept")
        return record

    stored = read_back()
    if stored != record:
        logger.error(
            "Legacy migration: encrypted record could not be verified, "
            "legacy keys kept"
        )
        return record

    try:
        store.remove_many(LEGACY_KEYS)
    except OSError as err:
        logger.error("Legacy migration: cleanup failed, retried on next load: %s", err)
        return record
    logger.info("Legacy session migrated to encrypted layout")
    return record
