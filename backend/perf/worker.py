from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
import uuid
from collections import deque
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping

from errors import WorkerError
from perf.tasks import TASK_HANDLERS, TaskHandler
from perf.timeouts import race_timeout
from telemetry.monitor import PerformanceMonitor


@dataclass
class WorkerTask:
    type: str
    data: Any
    future: "asyncio.Future[Any]"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    start_time: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True)
class WorkerMetrics:
    queue_length: int
    active_workers: int
    average_processing_time: float
    max_processing_time: float
    total_tasks: int
    failed_tasks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "queueLength": self.queue_length,
            "activeWorkers": self.active_workers,
            "performance": {
                "averageProcessingTime": self.average_processing_time,
                "maxProcessingTime": self.max_processing_time,
                "totalTasks": self.total_tasks,
                "failedTasks": self.failed_tasks,
            },
        }


class WorkerPool:
    """
    Dispatches CPU-bound tasks to `pool_size` executor slots.

    Each slot runs one task at a time; the slot table maps slot -> task and a completion is
    accepted only if its task id matches the slot's current task. Tasks beyond the free
    slots wait in a FIFO queue.
    """

    def __init__(
        self,
        pool_size: int | None = None,
        *,
        executor: Executor | None = None,
        handlers: Mapping[str, TaskHandler] | None = None,
        monitor: PerformanceMonitor | None = None,
        logger: logging.Logger | None = None,
    ):
        self.pool_size = pool_size or os.cpu_count() or 2
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self._executor = executor or ProcessPoolExecutor(max_workers=self.pool_size)
        self._owns_executor = executor is None
        self._handlers = dict(handlers if handlers is not None else TASK_HANDLERS)
        self._log = logger or logging.getLogger(__name__)
        self._monitor = monitor or PerformanceMonitor(logger=self._log)

        self._queue: deque[WorkerTask] = deque()
        self._slots: dict[int, WorkerTask] = {}
        self._failed = 0
        self._terminated = False
        self._log.debug("worker_pool_initialized pool_size=%d", self.pool_size)

    async def execute(self, task_type: str, data: Any) -> Any:
        if self._terminated:
            raise WorkerError("Worker pool is terminated")
        if task_type not in self._handlers:
            raise WorkerError(f"Unknown task type: {task_type!r}")

        task = WorkerTask(
            type=task_type, data=data, future=asyncio.get_running_loop().create_future()
        )
        self._queue.append(task)
        self._log.debug(
            "worker_task_queued task_id=%s task_type=%s queue_length=%d",
            task.id,
            task_type,
            len(self._queue),
        )
        self._process_queue()
        return await task.future

    async def execute_with_timeout(
        self, task_type: str, data: Any, timeout: float | None
    ) -> Any:
        return await race_timeout(self.execute(task_type, data), timeout)

    def _free_slot(self) -> int | None:
        for slot in range(self.pool_size):
            if slot not in self._slots:
                return slot
        return None

    def _process_queue(self) -> None:
        while self._queue:
            slot = self._free_slot()
            if slot is None:
                break
            task = self._queue.popleft()
            if task.future.done():
                continue

            self._slots[slot] = task
            task.start_time = time.perf_counter()
            handler = self._handlers[task.type]
            try:
                running = asyncio.wrap_future(self._executor.submit(handler, task.data))
            except RuntimeError as e:
                # Executor already shut down.
                del self._slots[slot]
                task.future.set_exception(WorkerError(str(e)))
                continue
            running.add_done_callback(functools.partial(self._on_done, slot, task.id))
            self._log.debug(
                "worker_task_started slot=%d task_id=%s task_type=%s",
                slot,
                task.id,
                task.type,
            )

    def _on_done(self, slot: int, task_id: str, running: "asyncio.Future[Any]") -> None:
        task = self._slots.get(slot)
        if task is None or task.id != task_id:
            level = logging.DEBUG if self._terminated else logging.ERROR
            self._log.log(
                level,
                "worker_message_error slot=%d expected=%s got=%s",
                slot,
                task.id if task is not None else None,
                task_id,
            )
            return

        del self._slots[slot]
        duration_ms = (time.perf_counter() - task.start_time) * 1000.0

        if running.cancelled():
            error: BaseException | None = WorkerError("Task was cancelled")
        else:
            error = running.exception()

        if error is not None:
            self._failed += 1
            self._monitor.track_operation(
                "worker_task",
                duration_ms,
                {"slot": slot, "taskType": task.type, "success": False, "error": str(error)},
            )
            self._log.error(
                "worker_task_error slot=%d task_id=%s error=%s", slot, task.id, error
            )
            if not task.future.done():
                if isinstance(error, WorkerError):
                    wrapped = error
                else:
                    wrapped = WorkerError(str(error))
                    wrapped.__cause__ = error
                task.future.set_exception(wrapped)
        else:
            self._monitor.track_operation(
                "worker_task",
                duration_ms,
                {"slot": slot, "taskType": task.type, "success": True},
            )
            self._log.debug(
                "worker_task_completed slot=%d task_id=%s duration_ms=%.2f",
                slot,
                task.id,
                duration_ms,
            )
            if not task.future.done():
                task.future.set_result(running.result())

        self._process_queue()

    def get_metrics(self) -> WorkerMetrics:
        report = self._monitor.get_report("worker_task")
        return WorkerMetrics(
            queue_length=len(self._queue),
            active_workers=len(self._slots),
            average_processing_time=report.average,
            max_processing_time=report.max,
            total_tasks=report.count,
            failed_tasks=self._failed,
        )

    def terminate(self) -> None:
        """
        Shut the executor down and drop queued and running tasks without resolving them.
        """
        self._terminated = True
        self._queue.clear()
        self._slots.clear()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._log.debug("worker_pool_terminated")
