from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class Metric:
    timestamp_ms: int
    duration_ms: float
    metadata: Any = None
    threshold_ms: float | None = None

    @property
    def violated(self) -> bool:
        return bool(self.threshold_ms) and self.duration_ms > self.threshold_ms  # type: ignore[operator]


@dataclass(frozen=True)
class PerformanceReport:
    name: str
    count: int
    average: float
    p95: float
    min: float
    max: float
    threshold_violations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "average": self.average,
            "p95": self.p95,
            "min": self.min,
            "max": self.max,
            "thresholdViolations": self.threshold_violations,
        }


ViolationListener = Callable[[str, Metric], None]


def _percentile(sorted_values: list[float], percentile: float) -> float:
    # Nearest-rank percentile.
    if not sorted_values:
        return 0.0
    index = max(0, math.ceil(percentile / 100.0 * len(sorted_values)) - 1)
    return sorted_values[index]


class PerformanceMonitor:
    """
    In-process operation timings with optional per-name thresholds.

    Listeners are called for every sample above its threshold; a failing listener is
    logged and does not stop the others.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or logging.getLogger(__name__)
        self._metrics: dict[str, list[Metric]] = {}
        self._thresholds: dict[str, float] = {}
        self._listeners: list[ViolationListener] = []

    def track_operation(self, name: str, duration_ms: float, metadata: Any = None) -> Metric:
        metric = Metric(
            timestamp_ms=int(time.time() * 1000),
            duration_ms=float(duration_ms),
            metadata=metadata,
            threshold_ms=self._thresholds.get(name),
        )
        self._metrics.setdefault(name, []).append(metric)
        self._log.debug("operation_tracked name=%s duration_ms=%.2f", name, duration_ms)

        if metric.violated:
            self._log.warning(
                "threshold_violation name=%s duration_ms=%.2f threshold_ms=%s",
                name,
                duration_ms,
                metric.threshold_ms,
            )
            for listener in list(self._listeners):
                try:
                    listener(name, metric)
                except Exception as e:
                    self._log.error("listener_notification_error %s", e)
        return metric

    def get_report(self, name: str) -> PerformanceReport:
        metrics = self._metrics.get(name) or []
        durations = sorted(m.duration_ms for m in metrics)
        return PerformanceReport(
            name=name,
            count=len(durations),
            average=(sum(durations) / len(durations)) if durations else 0.0,
            p95=_percentile(durations, 95),
            min=durations[0] if durations else 0.0,
            max=durations[-1] if durations else 0.0,
            threshold_violations=sum(1 for m in metrics if m.violated),
        )

    def get_all_reports(self) -> dict[str, PerformanceReport]:
        return {name: self.get_report(name) for name in self._metrics}

    def set_threshold(self, name: str, threshold_ms: float) -> None:
        self._thresholds[name] = float(threshold_ms)
        self._log.debug("threshold_set name=%s threshold_ms=%s", name, threshold_ms)

    def add_listener(self, listener: ViolationListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ViolationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear_metrics(self, name: str | None = None) -> None:
        if name is None:
            self._metrics.clear()
        else:
            self._metrics.pop(name, None)
        self._log.debug("metrics_cleared name=%s", name or "*")
