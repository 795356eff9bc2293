"""
State Storage Layer

RESPONSIBILITY: Durable key-value persistence for every governed record
ALLOWED INPUTS: JSON-serializable dicts keyed by relative paths
OUTPUTS: The same dicts, migrated to the current schema version

WHAT THIS LAYER MUST NOT DO:
============================
- Interpret records or execute business rules
- Leave partially written documents behind
- Retry failed writes

BOUNDARY ENFORCEMENT:
=====================
- Keys are relative paths such as "observations/<slug>.json"
- Every write is atomic (temp file + rename in the file backend)
- Every document carries schema_version and migration_history
- Components depend on the StateStore interface, never on a backend

KEY LAYOUT:
===========
    evidence/<id>.json
    observations/<slug>.json
    observations/archive/<slug>.json
    constraints/<state>/<id>.json
    .circuit-state.json
    .circuit-state-archive.json
    .overrides.json
    .governance.lock
    .governance-alert-state.json
    governance-alert-<date>-<metric>-<constraint_id>.json / .md
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional
import json
import logging
import os
import tempfile
import threading
import time

from ..clock import Clock, SystemClock
from ..contracts.base import CorruptStateError, InvalidInputError
from .schema import (
    CURRENT_SCHEMA_VERSION, MigrationRegistry, default_registry,
    make_envelope, read_envelope
)

logger = logging.getLogger(__name__)


# =============================================================================
# STORAGE INTERFACE (Dependency Inversion)
# =============================================================================

class StateStore:
    """
    Abstract key-value state store.

    Subclasses implement the raw text operations; envelope handling,
    migration and compare-and-put semantics live here so every backend
    behaves identically.
    """

    def __init__(self, clock: Optional[Clock] = None, registry: Optional[MigrationRegistry] = None):
        self._clock = clock or SystemClock()
        self._registry = registry or default_registry()
        self._mutex = threading.RLock()

    # -- raw operations (backend specific) ------------------------------------

    def _read_raw(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _write_raw(self, key: str, text: str) -> None:
        raise NotImplementedError

    def _delete_raw(self, key: str) -> bool:
        raise NotImplementedError

    def _list_raw(self, directory: str) -> List[str]:
        raise NotImplementedError

    def _create_raw_exclusive(self, key: str, text: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def _guard(self, key: str) -> Iterator[bool]:
        """Cross-writer guard for read-check-write sequences."""
        yield True

    # -- public API ------------------------------------------------------------

    @staticmethod
    def validate_key(key: str) -> str:
        if not key or key.startswith('/') or '..' in key.split('/'):
            raise InvalidInputError(f"Invalid storage key: {key!r}", context=(("key", str(key)),))
        return key

    def _decode(self, key: str, text: str) -> dict:
        try:
            return read_envelope(json.loads(text))
        except json.JSONDecodeError as exc:
            raise CorruptStateError(
                f"Stored document {key} is not valid JSON: {exc.msg}",
                context=(("key", key),)
            ) from exc

    def _read_envelope(self, key: str) -> Optional[dict]:
        text = self._read_raw(self.validate_key(key))
        if text is None:
            return None
        envelope = self._decode(key, text)
        if self._registry.needs_migration(envelope):
            migrated = self._registry.migrate(key, envelope, self._clock.now())
            self._write_raw(key, json.dumps(migrated, indent=2, sort_keys=True))
            logger.info(
                "Migrated %s from %s to %s",
                key, envelope.get('schema_version'), migrated['schema_version']
            )
            envelope = migrated
        return envelope

    def get(self, key: str) -> Optional[dict]:
        """Return the document's data, migrated to the current schema."""
        with self._mutex:
            envelope = self._read_envelope(key)
            return None if envelope is None else envelope['data']

    def get_envelope(self, key: str) -> Optional[dict]:
        with self._mutex:
            return self._read_envelope(key)

    def put(self, key: str, data: dict) -> None:
        """Atomically replace the document, preserving migration history."""
        with self._mutex:
            history: List[dict] = []
            existing = self._read_raw(self.validate_key(key))
            if existing is not None:
                try:
                    history = read_envelope(json.loads(existing)).get('migration_history', [])
                except json.JSONDecodeError:
                    history = []
            self._write_raw(key, json.dumps(make_envelope(data, history), indent=2, sort_keys=True))

    def put_text(self, key: str, text: str) -> None:
        """Write a non-JSON artifact (alert reports)."""
        with self._mutex:
            self._write_raw(self.validate_key(key), text)

    def get_text(self, key: str) -> Optional[str]:
        with self._mutex:
            return self._read_raw(self.validate_key(key))

    def delete(self, key: str) -> bool:
        with self._mutex:
            return self._delete_raw(self.validate_key(key))

    def move(self, src: str, dst: str, data: Optional[dict] = None) -> None:
        """
        Move a document between locations (moveState).

        The destination is written before the source is removed, so a crash
        in between leaves two copies rather than none.
        """
        with self._mutex:
            if data is None:
                data = self.get(src)
                if data is None:
                    raise CorruptStateError(f"Cannot move missing document {src}", context=(("key", src),))
            self.put(dst, data)
            if src != dst:
                self._delete_raw(self.validate_key(src))

    def list(self, directory: str) -> List[str]:
        """Keys of JSON documents directly inside `directory` (non-recursive)."""
        with self._mutex:
            return sorted(self._list_raw(directory.strip('/')))

    def exists(self, key: str) -> bool:
        with self._mutex:
            return self._read_raw(self.validate_key(key)) is not None

    def create_exclusive(self, key: str, data: dict) -> bool:
        """Create the document only if it does not exist. Returns False otherwise."""
        with self._mutex:
            text = json.dumps(make_envelope(data), indent=2, sort_keys=True)
            return self._create_raw_exclusive(self.validate_key(key), text)

    def compare_and_put(self, key: str, expected: Optional[dict], data: dict) -> bool:
        """
        Write `data` only if the current document equals `expected`.

        `expected=None` means the key must be absent. Returns False on
        mismatch or when another writer holds the guard.
        """
        with self._mutex:
            with self._guard(key) as acquired:
                if not acquired:
                    return False
                current = self.get(key)
                if current != expected:
                    return False
                self.put(key, data)
                return True

    def compare_and_delete(self, key: str, expected: dict) -> bool:
        """Delete the document only if it still equals `expected`."""
        with self._mutex:
            with self._guard(key) as acquired:
                if not acquired:
                    return False
                if self.get(key) != expected:
                    return False
                return self._delete_raw(self.validate_key(key))

    def quarantine(self, key: str) -> Optional[str]:
        """Move an unreadable document aside and return its new key."""
        with self._mutex:
            text = self._read_raw(self.validate_key(key))
            if text is None:
                return None
            stamp = self._clock.now().strftime('%Y%m%dT%H%M%S')
            target = f"{key}.corrupt-{stamp}"
            self._write_raw(target, text)
            self._delete_raw(key)
            return target

    @property
    def schema_version(self) -> str:
        return CURRENT_SCHEMA_VERSION


# =============================================================================
# IN-MEMORY BACKEND (Reference Implementation)
# =============================================================================

class InMemoryStateStore(StateStore):
    """
    In-memory implementation of the state store.

    Documents are held as serialized JSON text so that no caller can
    alias stored state. Suitable for tests and single-process use.
    """

    def __init__(self, clock: Optional[Clock] = None, registry: Optional[MigrationRegistry] = None):
        super().__init__(clock, registry)
        self._docs: Dict[str, str] = {}

    def _read_raw(self, key: str) -> Optional[str]:
        return self._docs.get(key)

    def _write_raw(self, key: str, text: str) -> None:
        self._docs[key] = text

    def _delete_raw(self, key: str) -> bool:
        return self._docs.pop(key, None) is not None

    def _list_raw(self, directory: str) -> List[str]:
        prefix = f"{directory}/" if directory else ""
        keys = []
        for key in self._docs:
            if not key.startswith(prefix) or not key.endswith('.json'):
                continue
            if '/' in key[len(prefix):]:
                continue
            keys.append(key)
        return keys

    def _create_raw_exclusive(self, key: str, text: str) -> bool:
        if key in self._docs:
            return False
        self._docs[key] = text
        return True

    def write_raw_for_testing(self, key: str, text: str) -> None:
        """Place arbitrary text (legacy or corrupt documents)."""
        self._docs[key] = text

    def keys(self) -> List[str]:
        return sorted(self._docs)


# =============================================================================
# FILE BACKEND
# =============================================================================

class FileStateStore(StateStore):
    """
    File-based implementation of the state store.

    Writes go to a temporary file in the destination directory and are
    moved into place with os.replace, so readers observe either the old
    or the new document, never a partial one.
    """

    GUARD_STALE_SECONDS = 60.0

    def __init__(
        self,
        root_dir: str,
        clock: Optional[Clock] = None,
        registry: Optional[MigrationRegistry] = None
    ):
        super().__init__(clock, registry)
        self._root = os.path.abspath(root_dir)
        os.makedirs(self._root, exist_ok=True)

    @property
    def root(self) -> str:
        return self._root

    def _path(self, key: str) -> str:
        return os.path.join(self._root, *key.split('/'))

    def _read_raw(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()

    def _write_raw(self, key: str, text: str) -> None:
        path = self._path(key)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _delete_raw(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.exists(path):
            return False
        os.unlink(path)
        return True

    def _list_raw(self, directory: str) -> List[str]:
        path = self._path(directory) if directory else self._root
        if not os.path.isdir(path):
            return []
        keys = []
        for name in os.listdir(path):
            if not name.endswith('.json') or name.startswith('.tmp-'):
                continue
            if os.path.isfile(os.path.join(path, name)):
                keys.append(f"{directory}/{name}" if directory else name)
        return keys

    def _create_raw_exclusive(self, key: str, text: str) -> bool:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        return True

    @contextmanager
    def _guard(self, key: str) -> Iterator[bool]:
        """O_EXCL guard file; a guard older than GUARD_STALE_SECONDS is broken."""
        guard_path = self._path(key) + '.guard'
        os.makedirs(os.path.dirname(guard_path), exist_ok=True)
        acquired = self._try_create_guard(guard_path)
        if not acquired and self._guard_is_stale(guard_path):
            logger.warning("Breaking stale guard %s", guard_path)
            try:
                os.unlink(guard_path)
            except FileNotFoundError:
                pass
            acquired = self._try_create_guard(guard_path)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    os.unlink(guard_path)
                except FileNotFoundError:
                    pass

    @staticmethod
    def _try_create_guard(guard_path: str) -> bool:
        try:
            fd = os.open(guard_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))
        return True

    def _guard_is_stale(self, guard_path: str) -> bool:
        try:
            age = time.time() - os.path.getmtime(guard_path)
        except FileNotFoundError:
            return True
        return age > self.GUARD_STALE_SECONDS


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class StorageConfig:
    """Configuration for state storage."""
    backend_type: str = "memory"  # "memory" or "file"
    state_dir: Optional[str] = None


def create_store(config: Optional[StorageConfig] = None, clock: Optional[Clock] = None) -> StateStore:
    """Create a state store based on configuration."""
    config = config or StorageConfig()
    if config.backend_type == "file":
        if not config.state_dir:
            raise InvalidInputError("file backend requires state_dir")
        return FileStateStore(config.state_dir, clock=clock)
    return InMemoryStateStore(clock=clock)


__all__ = [
    'StateStore', 'InMemoryStateStore', 'FileStateStore',
    'StorageConfig', 'create_store',
]
