"""
Keyed mutual exclusion for door actuation and principal verification.

Relay toggling is read-then-write, so two grants on the same door must never
interleave. Locks are created on first use and kept for the process lifetime;
the number of doors and principals is small.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLockRegistry:
    """One threading.Lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for key for the duration of the block."""
        lock = self.get(key)
        with lock:
            yield

    def door(self, door_id: int):
        return self.hold(("door", door_id))

    def principal(self, user_id: int):
        return self.hold(("user", user_id))
