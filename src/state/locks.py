from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLocks:
    """
    Per-key mutual exclusion within one process.

    Two notifications for the same subscription handled by the same container
    run their passes one after the other; different subscriptions never wait
    on each other. Entries are dropped when the last holder/waiter leaves.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders+waiters]
        self._entries: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock: threading.Lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
