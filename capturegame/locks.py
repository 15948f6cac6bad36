from __future__ import annotations
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class LockTimeout(TimeoutError):
    """A keyed critical section could not be entered in time."""


class KeyedLocks:
    """
    One mutex per key, created on demand and dropped once nobody holds or waits
    on it. Scans against different stations (or different teams) run in
    parallel; scans against the same key run one at a time.
    """
    def __init__(self, timeout_s: float = 5.0):
        self.timeout_s = float(timeout_s)
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, List] = {}   # key -> [lock, users]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock: threading.Lock = entry[0]
        try:
            if not lock.acquire(timeout=self.timeout_s):
                raise LockTimeout(f"timed out waiting for {key!r}")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
