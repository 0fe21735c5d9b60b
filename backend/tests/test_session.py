from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from engine.session import FALLBACK_MESSAGE, IMPORT_LAYER_ID, MapSession
from errors import WorkerError
from persistence.sink import MemorySink
from settings.types import (
    AppSettings,
    BatchSettings,
    CacheInvalidationRules,
    CacheSettings,
    WorkerSettings,
)


def _point(fid: str, lon: float, lat: float) -> dict:
    return {
        "type": "Feature",
        "id": fid,
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": {},
    }


def _collection(*features: dict) -> str:
    return json.dumps({"type": "FeatureCollection", "features": list(features)})


def _session(settings: AppSettings | None = None, **kwargs) -> MapSession:
    settings = settings or AppSettings(
        batch=BatchSettings(max_delay=0.001, retry_delay=0.001),
        worker=WorkerSettings(pool_size=2),
    )
    return MapSession(
        settings,
        telemetry=None,
        worker_executor=ThreadPoolExecutor(max_workers=2),
        **kwargs,
    )


def test_ai_response_is_applied_and_echoed():
    session = _session()
    text = 'Here you go. [zoom_to 51.5 -0.12 12] [add_feature {"type":"Point","coordinates":[-0.12,51.5]}]'

    assert asyncio.run(session.handle_ai_response(text)) == text
    state = session.snapshot()
    assert state["zoom"] == 12
    assert state["history"]["undoStack"]
    assert len(session.store.all_features()) == 1


def test_pipeline_failure_returns_fallback_message(monkeypatch):
    session = _session()

    def explode(text):
        raise RuntimeError("surface unavailable")

    monkeypatch.setattr(session.service, "execute_map_commands", explode)
    assert asyncio.run(session.handle_ai_response("[zoom_to 1 2]")) == FALLBACK_MESSAGE


def test_apply_commands_returns_results_and_undo_redo():
    session = _session()
    results = asyncio.run(
        session.apply_commands('[add_feature {"type":"Point","coordinates":[1,2]}] [remove_feature nope]')
    )
    assert [r.success for r in results] == [True, False]
    assert results[0].to_dict()["result"]["geometry"]["type"] == "Point"

    op = session.undo()
    assert op is not None and op.type == "create"
    assert session.store.all_features() == []
    assert session.redo() is not None
    assert len(session.store.all_features()) == 1


def test_edits_invalidate_the_cache_but_zoom_does_not_by_default():
    session = _session()
    session.cache.set("k", 1)
    session.surface.zoom_to((10.0, 10.0), 5)
    assert session.cache.get("k") == 1

    session.import_text(_collection(_point("a", 1, 1)), "geojson")
    assert session.cache.get("k") is None


def test_zoom_invalidation_can_be_enabled():
    settings = AppSettings(
        cache=CacheSettings(invalidation=CacheInvalidationRules(on_zoom=True))
    )
    session = _session(settings)
    session.cache.set("k", 1)
    session.surface.zoom_to((0.0, 0.0), 2)  # same view as the initial state
    assert session.cache.get("k") == 1
    session.surface.zoom_to((0.0, 0.0), 6)
    assert session.cache.get("k") is None


def test_import_and_export():
    session = _session()
    added = session.import_text(
        _collection(_point("a", 1, 1), _point("b", 2, 2)), "geojson"
    )
    assert [f.id for f in added] == ["a", "b"]
    assert session.store.get_layer_by_id(IMPORT_LAYER_ID) is not None

    exported = json.loads(session.export("geojson"))
    assert sorted(f["id"] for f in exported["features"]) == ["a", "b"]


def test_clusters_are_cached_and_rebuilt_after_edits():
    session = _session()
    session.import_text(
        _collection(_point("a", 0, 0), _point("b", 0.01, 0), _point("far", 100, 40)),
        "geojson",
    )
    world = (-180.0, -90.0, 180.0, 90.0)

    items = session.get_clusters(world, 0)
    clusters = [i for i in items if i["properties"].get("cluster")]
    assert len(clusters) == 1 and clusters[0]["properties"]["point_count"] == 2
    assert session.get_clusters(world, 0) is items

    cluster_id = clusters[0]["properties"]["cluster_id"]
    assert sorted(f.id for f in session.get_cluster_leaves(cluster_id)) == ["a", "b"]

    session.import_text(_collection(_point("c", 0, 0.01)), "geojson")
    rebuilt = session.get_clusters(world, 0)
    assert rebuilt is not items
    counts = [i["properties"]["point_count"] for i in rebuilt if i["properties"].get("cluster")]
    assert counts == [3]


def test_edits_drop_cached_clusters_even_when_edit_invalidation_is_off():
    settings = AppSettings(
        batch=BatchSettings(max_delay=0.001, retry_delay=0.001),
        worker=WorkerSettings(pool_size=2),
        cache=CacheSettings(invalidation=CacheInvalidationRules(on_edit=False)),
    )
    session = _session(settings)
    session.import_text(_collection(_point("a", 0, 0), _point("b", 0.01, 0)), "geojson")
    world = (-180.0, -90.0, 180.0, 90.0)
    session.cache.set("k", 1)

    items = session.get_clusters(world, 0)
    session.import_text(_collection(_point("c", 0, 0.01)), "geojson")
    rebuilt = session.get_clusters(world, 0)

    assert rebuilt is not items
    counts = [i["properties"]["point_count"] for i in rebuilt if i["properties"].get("cluster")]
    assert counts == [3]
    assert session.cache.get("k") == 1


def test_analysis_goes_through_workers_and_cache():
    session = _session()
    data = {
        "features": [
            {"type": "Point", "coordinates": [0, 0]},
            {"type": "Point", "coordinates": [0, 1]},
        ]
    }

    async def scenario():
        try:
            first, area = await asyncio.gather(
                session.analyze("distance", data),
                session.analyze("bbox", data),
            )
            second = await session.analyze("distance", data)
            with pytest.raises(WorkerError):
                await session.analyze("teleport", {})
            return first, area, second, session.metrics()
        finally:
            session.close()

    first, bbox, second, metrics = asyncio.run(scenario())
    assert 110 < first < 112
    assert second == first
    assert bbox == [0.0, 0.0, 0.0, 1.0]
    assert metrics["worker"]["performance"]["totalTasks"] == 2
    assert metrics["cache"]["hitRate"] > 0
    assert metrics["batch"]["performance"]["totalBatches"] >= 1


def test_state_is_restored_from_the_sink():
    sink = MemorySink()

    async def first_run():
        session = _session(sink=sink)
        session.start()
        await session.apply_commands("[zoom_to 48.85 2.35 11]")
        session.close()

    async def second_run():
        session = _session(sink=sink)
        session.start()
        try:
            return session.store.get_state()
        finally:
            session.close()

    asyncio.run(first_run())
    state = asyncio.run(second_run())
    assert state.center == (48.85, 2.35)
    assert state.zoom == 11
