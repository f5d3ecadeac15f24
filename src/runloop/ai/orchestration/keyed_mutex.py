"""Per-key exclusive execution for asyncio code."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import LockCancelledError

__all__ = ["KeyedMutex"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, eq=False)
class _KeyState:
    key: str
    locked: bool = False
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)


class KeyedMutex:
    """Serializes coroutines that share a key; distinct keys never block each other.

    Waiters on one key are served in arrival order.  Ownership is handed
    directly from the releasing holder to the next waiter, so a late arrival
    can never jump the queue.  Bookkeeping for a key is dropped as soon as it
    has neither a holder nor waiters.

    Example::

        mutex = KeyedMutex()
        await mutex.run_exclusive("db", lambda: connect("db"))
    """

    def __init__(self) -> None:
        self._states: dict[str, _KeyState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run_exclusive(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` while holding the lock for ``key``.

        Errors raised by ``fn`` propagate to this caller only; the lock is
        released either way.  ``timeout`` bounds the wait for the lock, not
        the execution of ``fn``.
        """

        state = await self._acquire(key, timeout)
        try:
            return await fn()
        finally:
            self._release(state)

    def is_locked(self, key: str) -> bool:
        state = self._states.get(key)
        return bool(state and state.locked)

    def queue_length(self, key: str) -> int:
        state = self._states.get(key)
        if state is None:
            return 0
        return sum(1 for waiter in state.waiters if not waiter.done())

    def keys(self) -> list[str]:
        return list(self._states)

    def clear_all(self) -> None:
        """Drop every lock; queued waiters fail with :class:`LockCancelledError`.

        Coroutines currently holding a lock keep running; their eventual
        release is ignored because the state they hold is no longer current.
        """

        states = list(self._states.values())
        self._states.clear()
        cancelled = 0
        for state in states:
            while state.waiters:
                waiter = state.waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(LockCancelledError(state.key))
                    cancelled += 1
            state.locked = False
        if states:
            LOGGER.debug("Cleared %d lock(s), cancelled %d waiter(s)", len(states), cancelled)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _acquire(self, key: str, timeout: float | None) -> _KeyState:
        state = self._states.get(key)
        if state is None:
            state = _KeyState(key=key)
            self._states[key] = state
        if not state.locked and not state.waiters:
            state.locked = True
            return state

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        state.waiters.append(waiter)
        try:
            if timeout is None:
                await waiter
            else:
                await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except BaseException:
            self._abandon(state, waiter)
            raise
        return state

    def _abandon(self, state: _KeyState, waiter: asyncio.Future[None]) -> None:
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            # Ownership was handed over while we were being cancelled.
            self._release(state)
            return
        try:
            state.waiters.remove(waiter)
        except ValueError:
            pass
        if not waiter.done():
            waiter.cancel()
        self._discard_if_idle(state)

    def _release(self, state: _KeyState) -> None:
        if self._states.get(state.key) is not state:
            return
        while state.waiters:
            waiter = state.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        state.locked = False
        self._discard_if_idle(state)

    def _discard_if_idle(self, state: _KeyState) -> None:
        if state.locked or state.waiters:
            return
        if self._states.get(state.key) is state:
            del self._states[state.key]

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        summary: dict[str, Any] = {
            key: {"locked": state.locked, "waiters": len(state.waiters)}
            for key, state in self._states.items()
        }
        return f"KeyedMutex({summary})"
