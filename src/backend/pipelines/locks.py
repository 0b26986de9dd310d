from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Set


class KeyedMutex:
    """Non-blocking per-key mutual exclusion; a held key rejects, never queues."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._held

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[bool]:
        """Yield whether the key was acquired; release on exit only if it was."""
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
