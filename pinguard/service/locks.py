from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Any, Callable, Dict, Tuple


class _LockRegistry:
    """Reference-counted map of key -> lock; entries vanish once unused."""

    def __init__(self, factory: Callable[[], Any]) -> None:
        self._factory = factory
        self._locks: Dict[str, Tuple[Any, int]] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> Any:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = self._factory()
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class KeyedLock(_LockRegistry):
    """Per-key ``threading.Lock`` for critical sections without awaits."""

    def __init__(self) -> None:
        super().__init__(threading.Lock)

    @contextlib.contextmanager
    def hold(self, key: str):
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)


class AsyncKeyedLock(_LockRegistry):
    """Per-key ``asyncio.Lock`` for critical sections that await I/O."""

    def __init__(self) -> None:
        super().__init__(asyncio.Lock)

    @contextlib.asynccontextmanager
    async def hold(self, key: str):
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)
