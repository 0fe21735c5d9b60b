from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from engine.session import MapSession, get_session
from main import app
from settings.types import AppSettings, BatchSettings, WorkerSettings


@pytest.fixture()
def session():
    s = MapSession(
        AppSettings(
            batch=BatchSettings(max_delay=0.001),
            worker=WorkerSettings(pool_size=1),
        ),
        telemetry=None,
        worker_executor=ThreadPoolExecutor(max_workers=1),
    )
    app.dependency_overrides[get_session] = lambda: s
    yield s
    app.dependency_overrides.clear()
    s.close()


@pytest.fixture()
def client(session):
    # No context manager: the lifespan (process-wide session) is not started.
    return TestClient(app)


POINTS = json.dumps(
    {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "id": "a", "geometry": {"type": "Point", "coordinates": [0, 0]}, "properties": {}},
            {"type": "Feature", "id": "b", "geometry": {"type": "Point", "coordinates": [0.01, 0]}, "properties": {}},
        ],
    }
)


def test_invoke_streams_sse_events(client):
    body = {
        "id": 1,
        "title": "t",
        "messages": [{"id": 1, "author": "human", "text": "[zoom_to 10 20 4]"}],
    }
    res = client.post("/invoke", json=body)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert "event: map_state" in res.text
    assert res.text.rstrip().endswith("event: commit\ndata: .")


def test_commands_state_and_undo(client):
    res = client.post(
        "/commands",
        json={"text": '[add_feature {"type":"Point","coordinates":[1,2]} pins] [style_feature nope {}]'},
    )
    assert res.status_code == 200
    payload = res.json()
    assert [r["success"] for r in payload["results"]] == [True, False]
    assert "durationMs" in payload["results"][0]

    state = client.get("/state").json()
    assert any(layer["id"] == "pins" for g in state["layers"] for layer in g["layers"])

    undone = client.post("/undo").json()
    assert undone["operation"]["type"] == "create"
    assert client.post("/undo").json()["operation"] is None
    assert client.post("/redo").json()["operation"]["type"] == "create"


def test_import_then_export(client):
    res = client.post("/import", json={"text": POINTS})
    assert res.json() == {"imported": 2, "featureIds": ["a", "b"]}

    exported = client.get("/export", params={"format": "geojson"})
    assert exported.headers["content-type"].startswith("application/geo+json")
    assert len(json.loads(exported.text)["features"]) == 2

    kml = client.get("/export", params={"format": "kml"})
    assert kml.text.startswith("<?xml")


def test_import_rejects_bad_input(client):
    res = client.post("/import", json={"text": "<kml>", "format": "kml"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Failed to import KML"


def test_clusters_and_leaves(client):
    client.post("/import", json={"text": POINTS})
    res = client.post("/clusters", json={"bbox": [-180, -90, 180, 90], "zoom": 0})
    assert res.status_code == 200
    (item,) = res.json()["items"]
    cluster_id = item["properties"]["cluster_id"]

    leaves = client.get(f"/clusters/{cluster_id}/leaves", params={"limit": 5}).json()
    assert sorted(f["id"] for f in leaves["features"]) == ["a", "b"]
    assert leaves["expansionZoom"] >= 1

    assert client.get("/clusters/123456/leaves").status_code == 404


def test_analyze(client):
    data = {"features": [{"type": "Point", "coordinates": [0, 0]}]}

    res = client.post("/analyze", json={"type": "bbox", "data": data})
    assert res.status_code == 200
    assert res.json() == {"type": "bbox", "result": [0.0, 0.0, 0.0, 0.0]}

    assert client.post("/analyze", json={"type": "nope", "data": {}}).status_code == 400

    metrics = client.get("/metrics").json()
    assert {"cache", "throttle", "batch", "operations", "worker"} <= set(metrics)


def test_telemetry_summary():
    res = TestClient(app).get("/telemetry/summary")
    assert res.status_code == 200
    payload = res.json()
    assert payload["enabled"] is True
    assert payload["commands"] == []
