"""
Spatial tasks runnable in a worker process.

Handlers are module-level functions over plain GeoJSON dicts so they pickle cleanly into a
ProcessPoolExecutor. Results are plain JSON values as well.
"""

from __future__ import annotations

from typing import Any, Callable

from geo.spatial import SpatialAnalyzer
from layers.types import Feature


TaskHandler = Callable[[dict[str, Any]], Any]

_analyzer = SpatialAnalyzer()


def _features(data: dict[str, Any]) -> list[Feature]:
    return [Feature.from_geojson(f) for f in data.get("features") or []]


def _feature(data: dict[str, Any]) -> Feature:
    return Feature.from_geojson(data["feature"])


def distance_task(data: dict[str, Any]) -> float:
    return _analyzer.calculate_distance(_features(data))


def area_task(data: dict[str, Any]) -> float:
    return _analyzer.calculate_area(_features(data))


def buffer_task(data: dict[str, Any]) -> dict[str, Any]:
    return _analyzer.create_buffer(
        _feature(data), float(data["distance"]), data.get("units") or "kilometers"
    ).to_geojson()


def simplify_task(data: dict[str, Any]) -> dict[str, Any]:
    return _analyzer.simplify_geometry(
        _feature(data), float(data.get("tolerance", 0.01))
    ).to_geojson()


def bbox_task(data: dict[str, Any]) -> list[float] | None:
    bbox = _analyzer.get_bounding_box(_features(data))
    return list(bbox) if bbox is not None else None


def centroid_task(data: dict[str, Any]) -> dict[str, Any]:
    return _analyzer.get_centroid(_feature(data)).to_geojson()


TASK_HANDLERS: dict[str, TaskHandler] = {
    "distance": distance_task,
    "area": area_task,
    "buffer": buffer_task,
    "simplify": simplify_task,
    "bbox": bbox_task,
    "centroid": centroid_task,
}
