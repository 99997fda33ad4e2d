"""
Keyed Locks

One threading.Lock per key, created on first use and dropped once the last
holder or waiter releases it. The map only ever holds keys that are in use.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """Serializes work per key; different keys never contend."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()  # Protects _entries and users counts

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
