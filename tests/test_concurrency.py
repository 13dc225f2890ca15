# tests/test_concurrency.py
import asyncio

import pytest

from core.concurrency import ChapterLockRegistry, ConcurrencyLimiter
from core.exceptions import ExternalCallTimeout, PreconditionError


@pytest.mark.asyncio
class TestConcurrencyLimiter:
    async def test_never_exceeds_max_concurrent(self) -> None:
        limiter = ConcurrencyLimiter(max_concurrent=2, default_timeout=5.0)
        peak = 0

        async def call() -> None:
            nonlocal peak
            peak = max(peak, limiter.active)
            await asyncio.sleep(0.01)

        await asyncio.gather(*(limiter.run(call) for _ in range(6)))

        assert peak == 2
        assert limiter.active == 0
        assert limiter.get_statistics()["calls_completed"] == 6

    async def test_waiters_are_served_in_fifo_order(self) -> None:
        limiter = ConcurrencyLimiter(max_concurrent=1, default_timeout=5.0)
        order: list[int] = []
        gate = asyncio.Event()

        async def blocker() -> None:
            await gate.wait()

        async def record(n: int) -> None:
            order.append(n)

        first = asyncio.create_task(limiter.run(blocker))
        await asyncio.sleep(0)
        waiters = []
        for n in range(4):
            waiters.append(asyncio.create_task(limiter.run(lambda n=n: record(n))))
            await asyncio.sleep(0)
        assert limiter.waiting == 4

        gate.set()
        await asyncio.gather(first, *waiters)
        assert order == [0, 1, 2, 3]

    async def test_timeout_releases_slot(self) -> None:
        limiter = ConcurrencyLimiter(max_concurrent=1, default_timeout=5.0)

        async def slow() -> str:
            await asyncio.sleep(1)
            return "late"

        async def fast() -> str:
            return "ok"

        with pytest.raises(ExternalCallTimeout) as exc_info:
            await limiter.run(slow, timeout=0.01, label="draft")
        assert exc_info.value.details["label"] == "draft"
        assert limiter.active == 0
        assert await limiter.run(fast) == "ok"
        assert limiter.get_statistics()["timeouts"] == 1

    async def test_failure_releases_slot(self) -> None:
        limiter = ConcurrencyLimiter(max_concurrent=1, default_timeout=5.0)

        async def boom() -> None:
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            await limiter.run(boom)
        assert limiter.active == 0
        assert limiter.get_statistics()["calls_failed"] == 1

    async def test_cancelled_waiter_does_not_leak_slot(self) -> None:
        limiter = ConcurrencyLimiter(max_concurrent=1, default_timeout=5.0)
        await limiter.acquire()
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        limiter.release()
        assert limiter.active == 0
        assert limiter.waiting == 0

    def test_rejects_zero_limit(self) -> None:
        with pytest.raises(ValueError):
            ConcurrencyLimiter(max_concurrent=0)


@pytest.mark.asyncio
class TestChapterLockRegistry:
    async def test_second_generation_is_rejected(self) -> None:
        registry = ChapterLockRegistry(enabled=True)
        async with registry.hold("c1"):
            assert registry.is_locked("c1")
            with pytest.raises(PreconditionError):
                async with registry.hold("c1"):
                    pass
            async with registry.hold("c2"):
                pass
        assert not registry.is_locked("c1")

    async def test_lock_released_on_error(self) -> None:
        registry = ChapterLockRegistry(enabled=True)
        with pytest.raises(RuntimeError):
            async with registry.hold("c1"):
                raise RuntimeError("draft failed")
        assert not registry.is_locked("c1")

    async def test_disabled_registry_never_blocks(self) -> None:
        registry = ChapterLockRegistry(enabled=False)
        async with registry.hold("c1"):
            async with registry.hold("c1"):
                assert not registry.is_locked("c1")
