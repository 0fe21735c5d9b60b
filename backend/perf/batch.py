from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from errors import BatchError
from telemetry.monitor import PerformanceMonitor


T = TypeVar("T")
R = TypeVar("R")

BatchFn = Callable[[list[T]], Awaitable[Sequence[R]]]


@dataclass
class _Pending(Generic[T, R]):
    item: T
    future: "asyncio.Future[R]"
    added_at: float


@dataclass(frozen=True)
class BatchMetrics:
    current_batch_size: int
    is_processing: bool
    average_processing_time: float
    max_processing_time: float
    total_batches: int
    failed_batches: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentBatchSize": self.current_batch_size,
            "isProcessing": self.is_processing,
            "performance": {
                "averageProcessingTime": self.average_processing_time,
                "maxProcessingTime": self.max_processing_time,
                "totalBatches": self.total_batches,
                "failedBatches": self.failed_batches,
            },
        }


class BatchProcessor(Generic[T, R]):
    """
    Coalesces items into calls of `processor(items) -> results` (same length, same order).

    A batch is flushed when it reaches `max_size` or `max_delay` seconds after its first
    item. Failed calls are retried up to `retry_attempts` times in total, waiting
    `retry_delay * attempt` seconds between attempts; after the last failure every item of
    the batch is rejected with BatchError. Items added while a batch is being processed
    wait for the next flush.
    """

    def __init__(
        self,
        processor: BatchFn[T, R],
        *,
        max_size: int = 100,
        max_delay: float = 1.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        monitor: PerformanceMonitor | None = None,
        logger: logging.Logger | None = None,
    ):
        if max_size < 1 or retry_attempts < 1:
            raise ValueError("max_size and retry_attempts must be >= 1")
        self.processor = processor
        self.max_size = max_size
        self.max_delay = float(max_delay)
        self.retry_attempts = retry_attempts
        self.retry_delay = float(retry_delay)
        self._log = logger or logging.getLogger(__name__)
        self._monitor = monitor or PerformanceMonitor(logger=self._log)

        self._batch: list[_Pending[T, R]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._processing = False
        self._failed_batches = 0
        self._tasks: set[asyncio.Task] = set()

        self._log.debug(
            "batch_processor_initialized max_size=%d max_delay=%s retry_attempts=%d",
            max_size,
            max_delay,
            retry_attempts,
        )

    @property
    def processing(self) -> bool:
        return self._processing

    def add(self, item: T) -> "asyncio.Future[R]":
        """
        Queue `item`; the returned future resolves with its result once its batch is done.

        Must be called with a running event loop.
        """
        fut: asyncio.Future[R] = asyncio.get_running_loop().create_future()
        self._batch.append(_Pending(item=item, future=fut, added_at=time.monotonic()))
        self._log.debug("item_added_to_batch batch_size=%d", len(self._batch))
        self._schedule()
        return fut

    def add_many(self, items: Sequence[T]) -> list["asyncio.Future[R]"]:
        return [self.add(item) for item in items]

    async def submit(self, item: T) -> R:
        return await self.add(item)

    def _schedule(self) -> None:
        if not self._batch:
            return
        if len(self._batch) >= self.max_size:
            self._flush()
        elif self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(
                self.max_delay, self._on_timer
            )

    def _on_timer(self) -> None:
        self._timer = None
        self._flush()

    def _flush(self) -> None:
        if self._processing or not self._batch:
            return
        self._processing = True
        items = self._batch[: self.max_size]
        self._batch = self._batch[self.max_size :]
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        task = asyncio.get_running_loop().create_task(self._process(items))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, items: list[_Pending[T, R]]) -> None:
        start = time.perf_counter()
        try:
            results = await self._process_with_retry([p.item for p in items])
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000.0
            self._failed_batches += 1
            self._monitor.track_operation(
                "batch_error", duration_ms, {"error": str(e), "batchSize": len(items)}
            )
            self._log.error("process_batch_error error=%s item_count=%d", e, len(items))
            for p in items:
                if not p.future.done():
                    err = BatchError(f"Batch processing failed: {e}")
                    err.__cause__ = e
                    p.future.set_exception(err)
        else:
            duration_ms = (time.perf_counter() - start) * 1000.0
            self._monitor.track_operation(
                "batch_process", duration_ms, {"batchSize": len(items), "success": True}
            )
            for p, result in zip(items, results):
                if not p.future.done():
                    p.future.set_result(result)
            self._log.debug(
                "batch_processed item_count=%d duration_ms=%.2f", len(items), duration_ms
            )
        finally:
            self._processing = False
            self._schedule()

    async def _process_with_retry(self, items: list[T]) -> Sequence[R]:
        attempt = 0
        while True:
            attempt += 1
            try:
                results = await self.processor(items)
                if len(results) != len(items):
                    raise BatchError(
                        f"Processor returned {len(results)} results for {len(items)} items"
                    )
                return results
            except Exception as e:
                self._log.warning(
                    "retry_attempt attempt=%d error=%s item_count=%d",
                    attempt,
                    e,
                    len(items),
                )
                if attempt >= self.retry_attempts:
                    raise
            await asyncio.sleep(self.retry_delay * attempt)

    def get_metrics(self) -> BatchMetrics:
        report = self._monitor.get_report("batch_process")
        return BatchMetrics(
            current_batch_size=len(self._batch),
            is_processing=self._processing,
            average_processing_time=report.average,
            max_processing_time=report.max,
            total_batches=report.count,
            failed_batches=self._failed_batches,
        )

    def dispose(self) -> None:
        """
        Stop the timer and drop queued items; their futures are never resolved.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._batch = []
        self._processing = False
        self._log.debug("batch_processor_disposed")
