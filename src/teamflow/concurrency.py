"""Per-key asyncio locks used to serialize access to shared records."""

import asyncio
from typing import Dict, Hashable


class KeyedLocks:
    """
    Lazily created asyncio.Lock per key.

    Serializes work on one key (a user, a conversation, a plan) while
    leaving unrelated keys free to proceed concurrently.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
