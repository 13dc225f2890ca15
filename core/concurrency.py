# core/concurrency.py
"""Bound concurrent model calls and guard in-flight chapter generations.

`ConcurrencyLimiter` replaces a hidden module-level counter with an explicit
object that is created once per process and injected into every component
that calls the model. Slots are handed to waiters in strict FIFO order, and
each call is wrapped in a timeout that releases its slot immediately.

`ChapterLockRegistry` is an in-process advisory lock keyed by chapter id. It
rejects a second concurrent generation for the same chapter instead of
queueing it; serialization across processes remains the job queue's concern.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog

import config
from core.exceptions import ExternalCallTimeout, PreconditionError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """Bounded FIFO limiter for external model calls."""

    def __init__(self, max_concurrent: int | None = None, default_timeout: float | None = None):
        limit = max_concurrent if max_concurrent is not None else config.MAX_CONCURRENT_LLM_CALLS
        if limit < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = limit
        self._default_timeout = default_timeout if default_timeout is not None else config.LLM_CALL_TIMEOUT_SECONDS
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._stats = {"calls_started": 0, "calls_completed": 0, "calls_failed": 0, "timeouts": 0}

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Take a slot, waiting in FIFO order when all slots are busy."""
        if self._active < self._max_concurrent and not self._waiters:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Hand the slot to the oldest live waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active > 0:
            self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
        label: str = "model_call",
    ) -> T:
        """Run `factory()` inside a slot with a call-scoped timeout.

        Raises:
            ExternalCallTimeout: When the call exceeds its timeout. The underlying
                coroutine is cancelled and its late result is discarded.
        """
        effective_timeout = timeout if timeout is not None else self._default_timeout
        await self.acquire()
        self._stats["calls_started"] += 1
        try:
            result = await asyncio.wait_for(factory(), timeout=effective_timeout)
            self._stats["calls_completed"] += 1
            return result
        except asyncio.TimeoutError as exc:
            self._stats["timeouts"] += 1
            logger.warning("ConcurrencyLimiter.run: call timed out", label=label, timeout=effective_timeout)
            raise ExternalCallTimeout(
                f"{label} timed out after {effective_timeout}s",
                details={"label": label, "timeout_seconds": effective_timeout},
            ) from exc
        except Exception:
            self._stats["calls_failed"] += 1
            raise
        finally:
            self.release()

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self._stats,
            "active": self._active,
            "waiting": self.waiting,
            "max_concurrent": self._max_concurrent,
        }


class ChapterLockRegistry:
    """Non-blocking per-chapter advisory lock for one process."""

    def __init__(self, enabled: bool | None = None):
        self._enabled = config.CHAPTER_ADVISORY_LOCK_ENABLED if enabled is None else enabled
        self._held: set[str] = set()

    def is_locked(self, chapter_id: str) -> bool:
        return chapter_id in self._held

    @asynccontextmanager
    async def hold(self, chapter_id: str) -> AsyncIterator[None]:
        """Hold the chapter for the duration of the block.

        Raises:
            PreconditionError: If a generation for the chapter is already in flight.
        """
        if not self._enabled:
            yield
            return

        if chapter_id in self._held:
            raise PreconditionError(
                "A generation for this chapter is already in progress",
                details={"chapter_id": chapter_id},
            )
        self._held.add(chapter_id)
        try:
            yield
        finally:
            self._held.discard(chapter_id)
