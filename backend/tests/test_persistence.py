from __future__ import annotations

import asyncio
import json

import pytest

from errors import PersistenceError
from layers.store import LayerStore
from persistence.sink import FileSink, MemorySink
from persistence.state import MapPersistence


def _state(zoom: float = 5) -> dict:
    return {"center": [51.5, -0.12], "zoom": zoom, "layers": []}


class BrokenSink(MemorySink):
    def set(self, key: str, value: str) -> None:
        raise OSError("disk full")


def test_save_and_load_round_trip_through_file_sink(tmp_path):
    persistence = MapPersistence(FileSink(tmp_path / "state"))
    assert persistence.save_state(_state())
    assert (tmp_path / "state" / "map-chat-state.json").exists()

    loaded = MapPersistence(FileSink(tmp_path / "state")).load_state()
    assert loaded == _state()


def test_load_with_nothing_saved_returns_none():
    assert MapPersistence(MemorySink()).load_state() is None


def test_load_calls_on_state_load():
    sink = MemorySink()
    sink.set("map-chat-state", json.dumps(_state(7)))
    seen: list[dict] = []
    persistence = MapPersistence(sink, on_state_load=seen.append)
    persistence.load_state()
    assert [s["zoom"] for s in seen] == [7]


def test_errors_are_reported_not_raised():
    errors: list[Exception] = []
    persistence = MapPersistence(BrokenSink(), on_state_error=errors.append)
    assert persistence.save_state(_state()) is False

    sink = MemorySink()
    sink.set("map-chat-state", "{broken")
    assert MapPersistence(sink, on_state_error=errors.append).load_state() is None

    assert [type(e).__name__ for e in errors] == ["OSError", "PersistenceError"]


def test_clear_state_removes_the_key():
    sink = MemorySink()
    persistence = MapPersistence(sink, key="custom")
    persistence.save_state(_state())
    persistence.clear_state()
    assert sink.get("custom") is None


def test_auto_save_tick_writes_only_changes():
    persistence = MapPersistence(MemorySink())
    state = _state()
    assert persistence.auto_save_tick(lambda: state) is True
    assert persistence.auto_save_tick(lambda: dict(state)) is False
    state["zoom"] = 9
    assert persistence.auto_save_tick(lambda: state) is True


def test_auto_save_tick_survives_a_failing_snapshot():
    errors: list[Exception] = []

    def explode():
        raise RuntimeError("snapshot failed")

    persistence = MapPersistence(MemorySink(), on_state_error=errors.append)
    assert persistence.auto_save_tick(explode) is False
    assert str(errors[0]) == "snapshot failed"


def test_background_auto_save_saves_store_snapshots():
    sink = MemorySink()
    store = LayerStore()

    async def scenario():
        persistence = MapPersistence(sink, interval=0.01)
        persistence.start_auto_save(store.snapshot)
        store.set_view((48.85, 2.35), 11)
        await asyncio.sleep(0.05)
        persistence.stop_auto_save()

    asyncio.run(scenario())
    saved = json.loads(sink.get("map-chat-state"))
    assert saved["zoom"] == 11


def test_export_and_import_json():
    persistence = MapPersistence(MemorySink())
    text = persistence.export_json(_state())
    assert "\n  " in text
    assert persistence.import_json(text) == _state()


@pytest.mark.parametrize("text", ["nope", "[1, 2]", json.dumps({"center": "somewhere"})])
def test_import_json_rejects_invalid_documents(text):
    with pytest.raises(PersistenceError):
        MapPersistence(MemorySink()).import_json(text)
