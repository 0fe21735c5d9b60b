from __future__ import annotations

import asyncio

import pytest

from errors import OperationTimeoutError, ThrottleError
from perf.throttle import ThrottleManager
from perf.timeouts import race_timeout


def test_concurrency_ceiling_queues_extra_operations():
    async def scenario():
        throttle = ThrottleManager(max_concurrent=5, max_per_second=100, max_burst_size=100)
        release = asyncio.Event()
        started: list[int] = []

        def op(i: int):
            async def run() -> int:
                started.append(i)
                await release.wait()
                return i

            return run

        tasks = [asyncio.create_task(throttle.execute(op(i))) for i in range(6)]
        await asyncio.sleep(0.01)
        snapshot = (list(started), throttle.active, throttle.queue_length)

        release.set()
        results = await asyncio.gather(*tasks)
        return snapshot, results, throttle.active

    (started, active, queued), results, active_after = asyncio.run(scenario())
    assert started == [0, 1, 2, 3, 4]
    assert active == 5 and queued == 1
    assert results == list(range(6))
    assert active_after == 0


def test_rate_limit_defers_but_completes_every_operation():
    async def scenario():
        throttle = ThrottleManager(max_concurrent=10, max_per_second=2, max_burst_size=100)

        async def noop() -> str:
            return "ok"

        loop = asyncio.get_running_loop()
        t0 = loop.time()
        results = await asyncio.gather(*(throttle.execute(noop) for _ in range(3)))
        return results, loop.time() - t0, throttle.get_metrics()

    results, elapsed, metrics = asyncio.run(scenario())
    assert results == ["ok", "ok", "ok"]
    # The third start waits for the first to leave the one-second window.
    assert elapsed >= 0.9
    assert metrics.throttled_operations >= 1


def test_on_throttle_reports_queue_length():
    lengths: list[int] = []

    async def scenario():
        throttle = ThrottleManager(max_concurrent=1, on_throttle=lengths.append)
        gate = asyncio.Event()

        async def blocked() -> None:
            await gate.wait()

        first = asyncio.create_task(throttle.execute(blocked))
        await asyncio.sleep(0)
        second = asyncio.create_task(throttle.execute(blocked))
        await asyncio.sleep(0.01)
        gate.set()
        await asyncio.gather(first, second)

    asyncio.run(scenario())
    assert lengths == [1]


def test_execute_operations_collects_every_failure():
    async def ok() -> int:
        return 1

    async def boom() -> int:
        raise ValueError("boom")

    async def scenario():
        throttle = ThrottleManager()
        return await throttle.execute_operations([ok, boom, ok, boom])

    with pytest.raises(ThrottleError) as exc_info:
        asyncio.run(scenario())
    assert len(exc_info.value.errors) == 2
    assert "2 operations failed" in str(exc_info.value)


def test_operation_timeout_does_not_cancel_the_operation():
    async def scenario():
        finished = asyncio.Event()

        async def slow() -> str:
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        throttle = ThrottleManager()
        with pytest.raises(OperationTimeoutError) as exc_info:
            await throttle.execute_operation(slow, timeout=0.01)
        await asyncio.wait_for(finished.wait(), 1)
        return str(exc_info.value)

    assert asyncio.run(scenario()) == "Operation timed out after 10ms"


def test_race_timeout_passes_results_through():
    async def scenario():
        async def value() -> int:
            return 7

        return await race_timeout(value(), 1), await race_timeout(value(), None)

    assert asyncio.run(scenario()) == (7, 7)


def test_burst_over_ceiling_starts_and_ends_cooldown():
    async def scenario():
        throttle = ThrottleManager(
            max_concurrent=5, max_per_second=100, max_burst_size=5, cooldown_period=0.05
        )

        def op(i: int):
            async def run() -> int:
                await asyncio.sleep(0)
                return i

            return run

        tasks = [asyncio.create_task(throttle.execute(op(i))) for i in range(8)]
        await asyncio.sleep(0)
        during = (throttle.cooling, throttle.get_metrics().is_cooling)
        results = await asyncio.gather(*tasks)
        await asyncio.sleep(0.1)
        return during, results, throttle.cooling, throttle.get_metrics()

    during, results, cooling_after, metrics = asyncio.run(scenario())
    assert during == (True, True)
    assert results == list(range(8))
    assert cooling_after is False
    assert metrics.throttled_operations >= 4


def test_queued_callers_drain_in_arrival_order():
    async def scenario():
        throttle = ThrottleManager(max_concurrent=1, max_per_second=100, max_burst_size=100)
        gate = asyncio.Event()
        started: list[str] = []

        def op(name: str):
            async def run() -> str:
                started.append(name)
                if name == "a":
                    await gate.wait()
                return name

            return run

        tasks = []
        for name in ("a", "b", "c", "d"):
            tasks.append(asyncio.create_task(throttle.execute(op(name))))
            await asyncio.sleep(0)
        queued = throttle.queue_length
        gate.set()
        results = await asyncio.gather(*tasks)
        return queued, started, results

    queued, started, results = asyncio.run(scenario())
    assert queued == 3
    assert started == ["a", "b", "c", "d"]
    assert results == ["a", "b", "c", "d"]


def test_dispose_leaves_queued_callers_unresolved():
    async def scenario():
        throttle = ThrottleManager(max_concurrent=1, max_per_second=100, max_burst_size=100)
        gate = asyncio.Event()

        async def blocked() -> str:
            await gate.wait()
            return "done"

        first = asyncio.create_task(throttle.execute(blocked))
        await asyncio.sleep(0)
        second = asyncio.create_task(throttle.execute(blocked))
        await asyncio.sleep(0)

        throttle.dispose()
        gate.set()
        first_result = await first
        await asyncio.sleep(0.05)
        pending = not second.done()
        queue_length = throttle.queue_length

        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second
        return first_result, pending, queue_length

    first_result, pending, queue_length = asyncio.run(scenario())
    assert first_result == "done"
    assert pending is True
    assert queue_length == 0
