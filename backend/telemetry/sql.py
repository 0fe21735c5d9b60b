from __future__ import annotations

CREATE_COMMAND_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS command_events (
  ts_ms BIGINT,
  command_type TEXT,
  success BOOLEAN,
  error TEXT,
  duration_ms DOUBLE,
  payload_json TEXT
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  command_type,
  COUNT(*) AS n,
  AVG(CASE WHEN success THEN 1 ELSE 0 END) AS success_rate,
  AVG(duration_ms) AS avg_ms,
  quantile_cont(duration_ms, 0.50) AS p50_ms,
  quantile_cont(duration_ms, 0.95) AS p95_ms,
  quantile_cont(duration_ms, 0.99) AS p99_ms
FROM command_events
{where_sql}
GROUP BY command_type
ORDER BY command_type
"""

RECENT_FAILURES_SQL = """
SELECT ts_ms, command_type, error, payload_json
FROM command_events
WHERE NOT success
ORDER BY ts_ms DESC
LIMIT ?
"""

INSERT_COMMAND_EVENT_SQL = """
INSERT INTO command_events
  (ts_ms, command_type, success, error, duration_ms, payload_json)
VALUES (?, ?, ?, ?, ?, ?)
"""
