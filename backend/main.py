from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from api.invoke_stream import echo_responder, handle_incoming_message
from engine.session import MapSession, get_session, reset_session
from errors import ClusterError, ImportFormatError, OperationTimeoutError, WorkerError
from settings.loader import get_settings
from telemetry.singleton import get_store


log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    session = get_session()
    session.start()
    log.info("map_chat_backend_started")
    yield
    reset_session()
    log.info("map_chat_backend_stopped")


app = FastAPI(title="map-chat", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Swap for a language-model client; tests replace it too.
app.state.responder = echo_responder


class ApiMessageSenderEnum(str, Enum):
    human = "human"
    ai = "ai"


class ApiMessage(BaseModel):
    id: int
    author: ApiMessageSenderEnum
    text: str


class ApiThread(BaseModel):
    id: int
    title: str
    messages: list[ApiMessage]


class CommandsRequest(BaseModel):
    text: str


class ImportRequest(BaseModel):
    text: str
    format: Literal["geojson", "kml"] = "geojson"
    layerId: str = "imported"


class ClustersRequest(BaseModel):
    bbox: tuple[float, float, float, float] = (-180.0, -90.0, 180.0, 90.0)
    zoom: float = Field(default=0.0, ge=0.0, le=30.0)


class AnalyzeRequest(BaseModel):
    type: str
    data: dict[str, Any]


@app.post("/invoke")
def invoke(body: ApiThread, session: MapSession = Depends(get_session)):
    return StreamingResponse(
        handle_incoming_message(body, session=session, responder=app.state.responder),
        media_type="text/event-stream",
    )


@app.get("/state")
def state(session: MapSession = Depends(get_session)):
    return session.snapshot()


@app.post("/commands")
async def commands(body: CommandsRequest, session: MapSession = Depends(get_session)):
    try:
        results = await session.apply_commands(body.text)
    except OperationTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e)) from e
    return {"results": [r.to_dict() for r in results], "state": session.snapshot()}


@app.post("/undo")
def undo(session: MapSession = Depends(get_session)):
    op = session.undo()
    return {
        "operation": op.to_dict() if op is not None else None,
        "state": session.snapshot(),
    }


@app.post("/redo")
def redo(session: MapSession = Depends(get_session)):
    op = session.redo()
    return {
        "operation": op.to_dict() if op is not None else None,
        "state": session.snapshot(),
    }


@app.get("/export")
def export(
    format: Literal["geojson", "kml"] = Query(default="geojson"),
    session: MapSession = Depends(get_session),
):
    media_type = (
        "application/geo+json" if format == "geojson" else "application/vnd.google-earth.kml+xml"
    )
    return PlainTextResponse(session.export(format), media_type=media_type)


@app.post("/import")
def import_features(body: ImportRequest, session: MapSession = Depends(get_session)):
    try:
        added = session.import_text(body.text, body.format, layer_id=body.layerId)
    except ImportFormatError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"imported": len(added), "featureIds": [f.id for f in added]}


@app.post("/clusters")
def clusters(body: ClustersRequest, session: MapSession = Depends(get_session)):
    try:
        items = session.get_clusters(body.bbox, body.zoom)
    except ClusterError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {"zoom": body.zoom, "items": items}


@app.get("/clusters/{cluster_id}/leaves")
def cluster_leaves(
    cluster_id: int,
    limit: int = Query(default=10, ge=1, le=10_000),
    offset: int = Query(default=0, ge=0),
    session: MapSession = Depends(get_session),
):
    try:
        leaves = session.get_cluster_leaves(cluster_id, limit, offset)
        expansion_zoom = session.get_cluster_expansion_zoom(cluster_id)
    except ClusterError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {
        "clusterId": cluster_id,
        "expansionZoom": expansion_zoom,
        "features": [f.to_geojson() for f in leaves],
    }


@app.post("/analyze")
async def analyze(body: AnalyzeRequest, session: MapSession = Depends(get_session)):
    try:
        result = await session.analyze(body.type, body.data)
    except WorkerError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except OperationTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e)) from e
    return {"type": body.type, "result": result}


@app.get("/metrics")
def metrics(session: MapSession = Depends(get_session)):
    return session.metrics()


@app.get("/telemetry/summary")
def telemetry_summary(command_type: str | None = None, since_ms: int | None = None):
    store = get_store()
    if store is None:
        return {"enabled": False, "commands": []}
    store.flush()
    return {
        "enabled": True,
        "commands": store.summary(command_type=command_type, since_ms=since_ms),
        "recentFailures": store.recent_failures(limit=10),
    }
