from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from errors import OperationTimeoutError


T = TypeVar("T")

log = logging.getLogger(__name__)


def _discard_outcome(task: asyncio.Future) -> None:
    # Retrieve the late result so asyncio does not report an unretrieved exception.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("timed_out_operation_failed error=%r", exc)


async def race_timeout(aw: Awaitable[T], timeout_s: float | None) -> T:
    """
    Await `aw`, failing with OperationTimeoutError after `timeout_s` seconds.

    The underlying operation is NOT cancelled on timeout: it keeps running and its
    eventual result or exception is discarded.
    """
    if timeout_s is None:
        return await aw

    task = asyncio.ensure_future(aw)
    try:
        done, _pending = await asyncio.wait({task}, timeout=timeout_s)
    except asyncio.CancelledError:
        task.add_done_callback(_discard_outcome)
        raise

    if task in done:
        return task.result()
    task.add_done_callback(_discard_outcome)
    raise OperationTimeoutError(timeout_s)
