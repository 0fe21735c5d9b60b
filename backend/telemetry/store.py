from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from telemetry.sql import (
    CREATE_COMMAND_EVENTS_TABLE_SQL,
    INSERT_COMMAND_EVENT_SQL,
    RECENT_FAILURES_SQL,
    SUMMARY_SQL_TEMPLATE,
)


log = logging.getLogger(__name__)

_FLUSH_BATCH_SIZE = 250
_FLUSH_INTERVAL_S = 0.5


def _safe_float(v) -> float | None:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


@dataclass
class TelemetryStore:
    """
    Append-only log of executed map commands in a DuckDB file.

    `record` never blocks: events are queued and written by one background thread in
    batches. Reads go through the same connection under a lock.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[tuple[Any, ...]]" = field(default_factory=queue.Queue, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_COMMAND_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, name="telemetry-writer", daemon=True
        )
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        command_type: str,
        success: bool,
        duration_ms: float,
        error: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.start()
        try:
            self._q.put_nowait(
                (
                    int(time.time() * 1000),
                    str(command_type),
                    bool(success),
                    error,
                    float(duration_ms),
                    json.dumps(payload or {}, ensure_ascii=False, default=str),
                )
            )
        except queue.Full:
            log.debug("telemetry_dropped command_type=%s", command_type)

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Wait until queued events are written (used by tests and on shutdown).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                break
            time.sleep(0.01)
        # The writer flushes on a timer; give it one interval.
        time.sleep(_FLUSH_INTERVAL_S + 0.05)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        command_type: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if command_type:
            where.append("command_type = ?")
            params.append(command_type)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)
        return [
            {
                "commandType": cmd,
                "n": int(n),
                "successRate": _safe_float(rate),
                "avgMs": _safe_float(avg_ms),
                "p50Ms": _safe_float(p50),
                "p95Ms": _safe_float(p95),
                "p99Ms": _safe_float(p99),
            }
            for cmd, n, rate, avg_ms, p50, p95, p99 in rows
        ]

    def recent_failures(self, *, limit: int = 25) -> list[dict[str, Any]]:
        rows = self.query(RECENT_FAILURES_SQL, [int(max(1, min(200, limit)))])
        return [
            {
                "tsMs": int(ts_ms),
                "commandType": cmd,
                "error": error,
                "payload": json.loads(payload_json) if payload_json else None,
            }
            for ts_ms, cmd, error, payload_json in rows
        ]

    def reset(self) -> None:
        # Stop the writer first so it cannot touch a closed connection.
        self.stop(timeout_s=2.0)
        with self._lock:
            try:
                self.conn.close()
            except duckdb.Error as e:
                log.debug("telemetry_close_error %s", e)
            self.path.unlink(missing_ok=True)

    def _write(self, batch: list[tuple[Any, ...]]) -> None:
        if not batch:
            return
        with self._lock:
            self.conn.executemany(INSERT_COMMAND_EVENT_SQL, batch)
            # Make rows visible to readers of the file immediately.
            self.conn.execute("CHECKPOINT;")

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[tuple[Any, ...]] = []
        last_flush = time.time()

        while not self._stop.is_set():
            try:
                e = self._q.get(timeout=0.1)
            except queue.Empty:
                e = None

            if e is not None:
                batch.append(e)
                self._q.task_done()

            now = time.time()
            if len(batch) >= _FLUSH_BATCH_SIZE or (
                batch and (now - last_flush) >= _FLUSH_INTERVAL_S
            ):
                self._write(batch)
                batch = []
                last_flush = now

        while True:
            try:
                batch.append(self._q.get_nowait())
            except queue.Empty:
                break
            self._q.task_done()
        self._write(batch)

