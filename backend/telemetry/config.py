from __future__ import annotations

from pathlib import Path

from settings.loader import get_settings, resolve_repo_path


def telemetry_path() -> Path:
    # Relative paths live under the repo so command history is easy to query locally.
    return resolve_repo_path(get_settings().telemetry.path)


def telemetry_enabled() -> bool:
    return get_settings().telemetry.enabled
