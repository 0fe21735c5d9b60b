from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from settings.types import AppSettings


def _repo_root() -> Path:
    # .../backend/settings/loader.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def config_path() -> Path:
    return Path(os.getenv("MAPCHAT_CONFIG") or (_repo_root() / "mapchat.yaml"))


def resolve_repo_path(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else _repo_root() / p


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config yaml root: {path}")
    return data


def _flag(v: str) -> bool:
    return v.strip().lower() not in {"0", "false", "no", "off"}


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    if v := os.getenv("MAPCHAT_LOG_LEVEL"):
        data["log_level"] = v.strip().upper()
    if v := os.getenv("MAPCHAT_STATE_DIR"):
        data.setdefault("persistence", {})["state_dir"] = v
    if v := os.getenv("MAPCHAT_TELEMETRY"):
        data.setdefault("telemetry", {})["enabled"] = _flag(v)
    if v := os.getenv("MAPCHAT_TELEMETRY_PATH"):
        data.setdefault("telemetry", {})["path"] = v
    return data


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Settings from the YAML config file (optional) with MAPCHAT_* env overrides on top.
    """
    return AppSettings.model_validate(_apply_env(_load_yaml(config_path())))


def clear_settings_cache() -> None:
    get_settings.cache_clear()
