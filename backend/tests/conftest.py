import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `layers.*`, `geo.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    # Keep telemetry and saved state out of the repo; settings are re-read per test.
    from settings.loader import clear_settings_cache

    monkeypatch.setenv("MAPCHAT_CONFIG", str(tmp_path / "mapchat.yaml"))
    monkeypatch.setenv("MAPCHAT_TELEMETRY_PATH", str(tmp_path / "telemetry.duckdb"))
    monkeypatch.setenv("MAPCHAT_STATE_DIR", str(tmp_path / "state"))
    clear_settings_cache()
    yield
    clear_settings_cache()
