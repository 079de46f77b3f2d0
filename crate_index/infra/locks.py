"""
按 key 互斥的异步锁。

同一个 (name, version) 的 ingestion 在进程内串行；不同 key 之间互不阻塞。
没有等待者时会回收对应的锁对象，避免 dict 无限增长。
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

import anyio


class KeyedLock:
    def __init__(self) -> None:
        self._locks: dict[Hashable, anyio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = anyio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def active_keys(self) -> list[Hashable]:
        return list(self._locks)
