from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from errors import ThrottleError
from perf.timeouts import race_timeout
from telemetry.monitor import PerformanceMonitor


T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]

_WINDOW_S = 1.0


@dataclass(frozen=True)
class ThrottleMetrics:
    active_operations: int
    queue_length: int
    operations_per_second: int
    is_cooling: bool
    average_processing_time: float
    max_processing_time: float
    total_operations: int
    throttled_operations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeOperations": self.active_operations,
            "queueLength": self.queue_length,
            "operationsPerSecond": self.operations_per_second,
            "isCooling": self.is_cooling,
            "performance": {
                "averageProcessingTime": self.average_processing_time,
                "maxProcessingTime": self.max_processing_time,
                "totalOperations": self.total_operations,
                "throttledOperations": self.throttled_operations,
            },
        }


class ThrottleManager:
    """
    Concurrency, rate and burst limiter for async operations.

    A caller proceeds immediately unless `max_concurrent` operations are active, the last
    second already saw `max_per_second` starts, or a burst cooldown is running. Otherwise
    it waits in a FIFO queue. A cooldown starts once `max_burst_size` calls arrived
    within one second, queued ones included. Capacity is reserved for a queued caller at
    the moment it is released, so wake-ups never overshoot the limits.

    `dispose()` drops queued callers without resolving them.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        max_per_second: int = 10,
        max_burst_size: int = 20,
        cooldown_period: float = 1.0,
        on_throttle: Callable[[int], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        monitor: PerformanceMonitor | None = None,
        logger: logging.Logger | None = None,
    ):
        if max_concurrent < 1 or max_per_second < 1 or max_burst_size < 1:
            raise ValueError("throttle limits must be >= 1")
        self.max_concurrent = max_concurrent
        self.max_per_second = max_per_second
        self.max_burst_size = max_burst_size
        self.cooldown_period = float(cooldown_period)
        self.on_throttle = on_throttle
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)
        self._monitor = monitor or PerformanceMonitor(logger=self._log)

        self._active = 0
        self._queue: deque[asyncio.Future[None]] = deque()
        self._executions: deque[float] = deque()
        self._submissions: deque[float] = deque()
        self._cooling = False
        self._cooldown_handle: asyncio.TimerHandle | None = None
        self._drain_handle: asyncio.TimerHandle | None = None
        self._throttled = 0

        self._log.debug(
            "throttle_manager_initialized max_concurrent=%d max_per_second=%d "
            "max_burst_size=%d cooldown_period=%s",
            max_concurrent,
            max_per_second,
            max_burst_size,
            cooldown_period,
        )

    @property
    def active(self) -> int:
        return self._active

    @property
    def queue_length(self) -> int:
        return sum(1 for f in self._queue if not f.done())

    @property
    def cooling(self) -> bool:
        return self._cooling

    # -----------------------------------------------------------------------------
    # Core
    # -----------------------------------------------------------------------------

    async def execute(self, operation: Operation[T]) -> T:
        self._submissions.append(self._clock())
        self._check_burst()
        # Earlier waiters go first, even if capacity happens to be free right now.
        if self._queue or self._should_throttle():
            await self._wait_for_capacity()
        else:
            self._reserve()

        start = time.perf_counter()
        try:
            result = await operation()
        except Exception as e:
            self._monitor.track_operation(
                "throttle_error", (time.perf_counter() - start) * 1000.0, {"error": str(e)}
            )
            raise
        else:
            self._monitor.track_operation(
                "throttled_operation",
                (time.perf_counter() - start) * 1000.0,
                {"success": True},
            )
            return result
        finally:
            self._active = max(0, self._active - 1)
            self._process_queue()

    def _prune(self) -> None:
        now = self._clock()
        while self._executions and now - self._executions[0] >= _WINDOW_S:
            self._executions.popleft()

    def _should_throttle(self) -> bool:
        self._prune()
        throttled = (
            self._active >= self.max_concurrent
            or len(self._executions) >= self.max_per_second
            or self._cooling
        )
        if throttled:
            self._log.debug(
                "operation_throttled active=%d executions_per_second=%d cooling=%s",
                self._active,
                len(self._executions),
                self._cooling,
            )
        return throttled

    def _reserve(self) -> None:
        self._active += 1
        self._executions.append(self._clock())

    async def _wait_for_capacity(self) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(fut)
        self._throttled += 1
        self._log.debug("waiting_for_capacity queue_length=%d", len(self._queue))
        if self.on_throttle is not None:
            self.on_throttle(len(self._queue))
        self._schedule_drain()

        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Released (capacity reserved) but cancelled before resuming: give it back.
                self._active = max(0, self._active - 1)
                self._process_queue()
            else:
                try:
                    self._queue.remove(fut)
                except ValueError:
                    pass
            raise

    def _process_queue(self) -> None:
        while self._queue and not self._should_throttle():
            fut = self._queue.popleft()
            if fut.done():
                continue
            self._reserve()
            fut.set_result(None)

        self._check_burst()
        self._schedule_drain()

    def _check_burst(self) -> None:
        """
        Start a cooldown once `max_burst_size` submissions (throttled ones included)
        arrived within the last second. The count restarts with each cooldown.
        """
        now = self._clock()
        while self._submissions and now - self._submissions[0] >= _WINDOW_S:
            self._submissions.popleft()
        if self._cooling or len(self._submissions) < self.max_burst_size:
            return
        self._cooling = True
        self._log.debug("cooldown_started burst_size=%d", len(self._submissions))
        self._submissions.clear()
        self._cooldown_handle = asyncio.get_running_loop().call_later(
            self.cooldown_period, self._end_cooldown
        )

    def _end_cooldown(self) -> None:
        self._cooling = False
        self._cooldown_handle = None
        self._log.debug("cooldown_ended")
        self._process_queue()

    def _schedule_drain(self) -> None:
        """
        When waiters are blocked only by the per-second window, nothing else would wake
        them: arm a timer for when the oldest start leaves the window.
        """
        if self._drain_handle is not None or not self._queue or self._cooling:
            return
        if self._active >= self.max_concurrent:
            return
        self._prune()
        if len(self._executions) < self.max_per_second:
            return
        delay = max(0.0, _WINDOW_S - (self._clock() - self._executions[0]))
        self._drain_handle = asyncio.get_running_loop().call_later(
            delay + 0.001, self._on_drain_timer
        )

    def _on_drain_timer(self) -> None:
        self._drain_handle = None
        self._process_queue()

    # -----------------------------------------------------------------------------
    # Wrappers
    # -----------------------------------------------------------------------------

    async def execute_operation(
        self, operation: Operation[T], *, timeout: float | None = None
    ) -> T:
        """
        `execute` raced against `timeout` seconds (OperationTimeoutError on expiry).
        """
        try:
            result = await race_timeout(self.execute(operation), timeout)
        except Exception as e:
            self._log.error("operation_error %s", e)
            raise
        self._log.debug("operation_completed success=True")
        return result

    async def execute_operations(
        self, operations: Sequence[Operation[T]], *, timeout: float | None = None
    ) -> list[T]:
        """
        Run operations one after another; raise ThrottleError listing every failure
        once all of them were attempted.
        """
        results: list[T] = []
        errors: list[BaseException] = []
        for op in operations:
            try:
                results.append(await self.execute_operation(op, timeout=timeout))
            except Exception as e:
                errors.append(e)

        if errors:
            raise ThrottleError(
                f"{len(errors)} operations failed: {', '.join(str(e) for e in errors)}",
                errors,
            )
        self._log.debug("operations_completed count=%d", len(results))
        return results

    def get_metrics(self) -> ThrottleMetrics:
        self._prune()
        report = self._monitor.get_report("throttled_operation")
        return ThrottleMetrics(
            active_operations=self._active,
            queue_length=self.queue_length,
            operations_per_second=len(self._executions),
            is_cooling=self._cooling,
            average_processing_time=report.average,
            max_processing_time=report.max,
            total_operations=report.count,
            throttled_operations=self._throttled,
        )

    def dispose(self) -> None:
        for handle in (self._cooldown_handle, self._drain_handle):
            if handle is not None:
                handle.cancel()
        self._cooldown_handle = None
        self._drain_handle = None
        self._queue.clear()
        self._executions.clear()
        self._submissions.clear()
        self._active = 0
        self._cooling = False
        self._log.debug("throttle_manager_disposed")
