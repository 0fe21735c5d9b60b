from __future__ import annotations

import logging

import pytest

from telemetry.monitor import PerformanceMonitor


def test_report_aggregates_samples():
    monitor = PerformanceMonitor()
    for d in [10, 20, 30, 40, 100]:
        monitor.track_operation("render", d)

    report = monitor.get_report("render")
    assert report.count == 5
    assert report.average == pytest.approx(40.0)
    assert (report.min, report.max) == (10.0, 100.0)
    assert report.p95 == 100.0
    assert report.to_dict()["thresholdViolations"] == 0


def test_unknown_operation_reports_zeros():
    report = PerformanceMonitor().get_report("nothing")
    assert report.count == 0
    assert report.average == report.p95 == report.max == 0.0


def test_threshold_violations_notify_listeners(caplog):
    monitor = PerformanceMonitor()
    monitor.set_threshold("query", 50)
    seen: list[tuple[str, float]] = []

    def broken(name, metric):
        raise RuntimeError("listener failed")

    monitor.add_listener(broken)
    monitor.add_listener(lambda name, metric: seen.append((name, metric.duration_ms)))

    caplog.set_level(logging.WARNING)
    monitor.track_operation("query", 20)
    monitor.track_operation("query", 80, {"rows": 3})

    assert seen == [("query", 80.0)]
    assert monitor.get_report("query").threshold_violations == 1
    assert "threshold_violation" in caplog.text
    assert "listener_notification_error" in caplog.text


def test_clear_metrics():
    monitor = PerformanceMonitor()
    monitor.track_operation("a", 1)
    monitor.track_operation("b", 2)
    monitor.clear_metrics("a")
    assert set(monitor.get_all_reports()) == {"b"}
    monitor.clear_metrics()
    assert monitor.get_all_reports() == {}
