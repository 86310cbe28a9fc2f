"""Process-local per-record locks.

Mutations of a single incident are serialized by holding that incident's
lock for the whole read-check-write-audit sequence. Different incidents
never contend. Version checks in the database still catch writers in
other processes.

Locks are reference counted: an entry lives in the registry only while
some thread holds or waits on it.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

_registry_lock = threading.Lock()


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


_locks: dict[str, _LockEntry] = {}


def _acquire_entry(key: str) -> _LockEntry:
    with _registry_lock:
        entry = _locks.get(key)
        if entry is None:
            entry = _LockEntry()
            _locks[key] = entry
        entry.users += 1
        return entry


def _release_entry(key: str, entry: _LockEntry) -> None:
    with _registry_lock:
        entry.users -= 1
        if entry.users == 0 and _locks.get(key) is entry:
            del _locks[key]


@contextmanager
def record_lock(key: str) -> Iterator[None]:
    """Hold the lock for a record key for the duration of the block.

    Usage:
        with record_lock(incident_lock_key(incident_id)):
            ...
    """
    entry = _acquire_entry(key)
    try:
        with entry.lock:
            yield
    finally:
        _release_entry(key, entry)


def active_lock_count() -> int:
    """Number of record keys currently held or waited on."""
    with _registry_lock:
        return len(_locks)


def is_locked(key: str) -> bool:
    """Whether some thread currently holds the lock for a record key."""
    with _registry_lock:
        entry = _locks.get(key)
        return entry is not None and entry.lock.locked()


def incident_lock_key(incident_id: str) -> str:
    return f"incident:{incident_id}"


def conversation_lock_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def derive_lock_key(conversation_id: str) -> str:
    return f"derive:{conversation_id}"
