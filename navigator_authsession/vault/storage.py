"""
Vault Storage — persistent key-value backends for the credential vault.

Every write (``put``, ``remove``, ``remove_many``) replaces the whole store in
a single atomic step, so a crash leaves either the previous or the new
content, never a torn mix of both.
"""
import os
import base64
import logging
import tempfile
import threading
from typing import Optional, Protocol, runtime_checkable
from collections.abc import Iterable

import orjson

logger = logging.getLogger("navigator.authsession.vault")


@runtime_checkable
class PersistentKeyValueStore(Protocol):
    """Byte-valued key-value store with atomic single-key overwrite."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def put(self, key: str, value: bytes) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def remove_many(self, keys: Iterable[str]) -> None:
        ...

    def contains(self, key: str) -> bool:
        ...


class MemoryKeyValueStore:
    """In-process store, used by tests and ephemeral sessions."""

    def __init__(self, data: Optional[dict[str, bytes]] = None):
        self._lock = threading.Lock()
        self._data: dict[str, bytes] = dict(data or {})

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def remove_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())


class FileKeyValueStore:
    """JSON file store; values are base64-encoded bytes.

    Writes go to a temporary file in the same directory which is fsync'ed and
    then renamed over the store with ``os.replace``.
    """

    def __init__(self, path: str):
        self._path = os.path.abspath(os.path.expanduser(path))
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            with open(self._path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            return {}
        if not raw:
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            logger.error("Session store %s is corrupt: %s", self._path, err)
            return {}
        if not isinstance(data, dict):
            logger.error("Session store %s is not an object", self._path)
            return {}
        return data

    def _write(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(self._path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".authsession.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(orjson.dumps(data, option=orjson.OPT_SORT_KEYS))
                f.flush()
                os.fsync(f.fileno())
            if os.name != "nt":
                os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            value = self._read().get(key)
        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except (TypeError, ValueError):
            logger.error("Session store entry %r is not valid base64", key)
            return None

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            data = self._read()
            data[key] = base64.b64encode(value).decode("ascii")
            self._write(data)

    def remove(self, key: str) -> None:
        self.remove_many([key])

    def remove_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._read()
            changed = False
            for key in keys:
                if data.pop(key, None) is not None:
                    changed = True
            if changed:
                self._write(data)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._read()
