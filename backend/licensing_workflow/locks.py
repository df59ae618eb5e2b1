"""
Per-key serialization.

Each case, round-robin cursor and officer gets its own re-entrant lock, so
writes to the same case never interleave while different cases proceed in
parallel. Locks are reference counted and dropped once nobody holds or waits.

Acquisition order is always: case -> round-robin role -> officer.

Work that must not run under a lock (notification delivery) is registered
with call_after_release() and runs once the calling thread has released
every key of that registry.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Registry of re-entrant locks addressed by string key."""

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [RLock, refcount]
        self._local = threading.local()  # depth, deferred callbacks

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                self._local.depth = self._depth() + 1
                try:
                    yield
                finally:
                    self._local.depth -= 1
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]
            if self._depth() == 0:
                self._run_deferred()

    def held_by_current_thread(self) -> bool:
        return self._depth() > 0

    def call_after_release(self, callback: Callable[[], None]) -> None:
        """Run `callback` now if this thread holds no key, else after its last release."""
        if self._depth() == 0:
            callback()
            return
        deferred = getattr(self._local, "deferred", None)
        if deferred is None:
            deferred = self._local.deferred = []
        deferred.append(callback)

    def _run_deferred(self) -> None:
        deferred = getattr(self._local, "deferred", None)
        self._local.deferred = None
        for callback in deferred or ():
            try:
                callback()
            except Exception:
                logger.exception(f"Deferred callback after {self.name} lock release failed")

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


case_locks = KeyedLocks("case")
cursor_locks = KeyedLocks("round_robin")
officer_locks = KeyedLocks("officer")
