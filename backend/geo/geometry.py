from __future__ import annotations

from typing import Any, Iterator

from layers.types import Feature


Position = list[float]

EDITABLE_GEOMETRY_TYPES = frozenset({"LineString", "Polygon"})


def is_editable_feature(feature: Feature) -> bool:
    return feature.geometry_type in EDITABLE_GEOMETRY_TYPES


def get_feature_coordinates(feature: Feature) -> list[Position]:
    """
    Vertex list of an editable feature: the line itself, or the outer ring of a polygon.

    Raises ValueError for anything else.
    """
    if not is_editable_feature(feature):
        raise ValueError("Feature must be a LineString or Polygon")
    coords = feature.geometry.get("coordinates") or []
    if feature.geometry_type == "LineString":
        return [list(p) for p in coords]
    return [list(p) for p in (coords[0] if coords else [])]


def create_line_string(coordinates: list[Position]) -> dict[str, Any]:
    return {"type": "LineString", "coordinates": [list(p) for p in coordinates]}


def create_polygon(coordinates: list[Position]) -> dict[str, Any]:
    return {"type": "Polygon", "coordinates": [[list(p) for p in coordinates]]}


def update_feature_geometry(feature: Feature, coordinates: list[Position]) -> Feature:
    """
    Copy of `feature` with its vertex list replaced (holes of a polygon are dropped).
    """
    if not is_editable_feature(feature):
        raise ValueError("Feature must be a LineString or Polygon")
    out = feature.copy()
    if feature.geometry_type == "LineString":
        out.geometry = create_line_string(coordinates)
    else:
        out.geometry = create_polygon(coordinates)
    return out


def iter_positions(geometry: dict[str, Any]) -> Iterator[tuple[float, float]]:
    """
    Yield every (lon, lat) position of a GeoJSON geometry, any type.

    Raises ValueError on malformed coordinate arrays.
    """
    gtype = geometry.get("type")
    if gtype == "GeometryCollection":
        for g in geometry.get("geometries") or []:
            yield from iter_positions(g)
        return

    coords = geometry.get("coordinates")
    depth = {
        "Point": 0,
        "MultiPoint": 1,
        "LineString": 1,
        "MultiLineString": 2,
        "Polygon": 2,
        "MultiPolygon": 3,
    }.get(gtype)  # type: ignore[arg-type]
    if depth is None:
        raise ValueError(f"Unknown geometry type: {gtype!r}")
    yield from _walk(coords, depth)


def _walk(coords: Any, depth: int) -> Iterator[tuple[float, float]]:
    if depth == 0:
        if not isinstance(coords, (list, tuple)) or len(coords) < 2:
            raise ValueError(f"Invalid position: {coords!r}")
        yield float(coords[0]), float(coords[1])
        return
    if not isinstance(coords, (list, tuple)):
        raise ValueError(f"Invalid coordinate array: {coords!r}")
    for c in coords:
        yield from _walk(c, depth - 1)


def representative_coordinates(feature: Feature) -> list[tuple[float, float]]:
    """
    Coordinates used to reduce a feature to a single point (Point, LineString, Polygon).
    """
    if feature.geometry_type == "Point":
        return list(iter_positions(feature.geometry))
    return [(float(p[0]), float(p[1])) for p in get_feature_coordinates(feature)]
