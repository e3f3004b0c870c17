"""
Async mutual exclusion with FIFO hand-off.

Used by the session store to serialize writes and by the gateway to keep a
single token refresh in flight.
"""

import asyncio
import functools
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])

ReleaseHandle = Callable[[], None]


class Mutex:
    """
    Minimal async mutex.

    ``acquire()`` returns a release handle. Waiters are served strictly in
    arrival order and the lock is handed directly to the next waiter on
    release, so nobody can slip in between. Calling a handle twice is a no-op.
    """

    def __init__(self):
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()
        self._current_release: Optional[ReleaseHandle] = None

    def locked(self) -> bool:
        return self._locked

    @property
    def queue_length(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> ReleaseHandle:
        """Wait for the lock and return the handle that releases it."""
        if not self._locked:
            self._locked = True
            return self._create_release_handle()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Lock was already handed to us; pass it on
                self._hand_off()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

        return self._create_release_handle()

    def _create_release_handle(self) -> ReleaseHandle:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._hand_off()

        return release

    def _hand_off(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._locked = False

    async def __aenter__(self) -> 'Mutex':
        self._current_release = await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        release, self._current_release = self._current_release, None
        if release:
            release()


def with_lock(func: F) -> F:
    """
    Wrap a coroutine function so that only one call runs at a time.

    Each decorated function gets its own Mutex; concurrent calls queue in
    arrival order. On a method the Mutex belongs to the function, not the
    instance, so calls through different objects are serialized too.
    """
    mutex = Mutex()

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        release = await mutex.acquire()
        try:
            return await func(*args, **kwargs)
        finally:
            release()

    wrapper.mutex = mutex
    return wrapper
