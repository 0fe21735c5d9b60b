"""
GeoJSON and KML interchange for store features.

KML support is deliberately minimal: placemark name, description and LineString
coordinates. Other KML geometries and all styles are ignored on import and skipped on export.
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Iterable, Literal

from errors import ImportFormatError
from layers.types import Feature


FileFormat = Literal["geojson", "kml"]

KML_NS = "http://www.opengis.net/kml/2.2"
_GEOJSON_TYPES = {"Feature", "FeatureCollection", "GeometryCollection"}

log = logging.getLogger(__name__)


def export_geojson(features: Iterable[Feature]) -> str:
    collection = {
        "type": "FeatureCollection",
        "features": [f.to_geojson() for f in features],
    }
    log.debug("map_command type=geojson_export n=%d", len(collection["features"]))
    return json.dumps(collection, indent=2, ensure_ascii=False)


def import_geojson(text: str) -> list[Feature]:
    """
    Features from a GeoJSON document. Accepts a Feature or a FeatureCollection;
    a GeometryCollection validates but yields no features.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        log.error("geojson_import_error %s", e)
        raise ImportFormatError("Failed to import GeoJSON") from e

    if not isinstance(data, dict) or data.get("type") not in _GEOJSON_TYPES:
        log.error("geojson_import_error Invalid GeoJSON format")
        raise ImportFormatError("Failed to import GeoJSON")

    raw: list[Any] = []
    if data["type"] == "FeatureCollection":
        raw = list(data.get("features") or [])
    elif data["type"] == "Feature":
        raw = [data]

    try:
        features = [Feature.from_geojson(f) for f in raw]
    except ValueError as e:
        log.error("geojson_import_error %s", e)
        raise ImportFormatError("Failed to import GeoJSON") from e

    log.debug("map_command type=geojson_import n=%d", len(features))
    return features


def _namespace(root: ET.Element) -> str:
    if root.tag.startswith("{"):
        return root.tag.split("}", 1)[0] + "}"
    return ""


def _text(parent: ET.Element, tag: str, ns: str) -> str:
    elem = parent.find(f".//{ns}{tag}")
    if elem is None or not elem.text:
        return ""
    return elem.text.strip()


def _parse_coordinates(raw: str) -> list[list[float]]:
    coords: list[list[float]] = []
    for token in raw.split():
        parts = token.split(",")
        if len(parts) < 2:
            raise ValueError(f"Invalid KML coordinate: {token!r}")
        coords.append([float(parts[0]), float(parts[1])])
    return coords


def import_kml(text: str) -> list[Feature]:
    """
    One LineString feature per placemark that has coordinates.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        log.error("kml_import_error %s", e)
        raise ImportFormatError("Failed to import KML") from e

    ns = _namespace(root)
    features: list[Feature] = []
    try:
        for pm in root.iter(f"{ns}Placemark"):
            coordinates = _text(pm, "coordinates", ns)
            if not coordinates:
                continue
            features.append(
                Feature(
                    geometry={
                        "type": "LineString",
                        "coordinates": _parse_coordinates(coordinates),
                    },
                    properties={
                        "name": _text(pm, "name", ns),
                        "description": _text(pm, "description", ns),
                    },
                )
            )
    except ValueError as e:
        log.error("kml_parse_error %s", e)
        raise ImportFormatError("Failed to import KML") from e

    log.debug("map_command type=kml_import n=%d", len(features))
    return features


def export_kml(features: Iterable[Feature]) -> str:
    kml = ET.Element("kml", {"xmlns": KML_NS})
    doc = ET.SubElement(kml, "Document")

    for index, feature in enumerate(features):
        if feature.geometry_type != "LineString":
            continue
        coords = feature.geometry.get("coordinates") or []
        if not coords:
            continue
        pm = ET.SubElement(doc, "Placemark")
        ET.SubElement(pm, "name").text = str(
            feature.properties.get("name") or f"Feature {index + 1}"
        )
        ET.SubElement(pm, "description").text = str(
            feature.properties.get("description") or ""
        )
        line = ET.SubElement(pm, "LineString")
        ET.SubElement(line, "coordinates").text = " ".join(
            ",".join(str(v) for v in c) for c in coords
        )

    log.debug("map_command type=kml_export")
    return ET.tostring(kml, encoding="unicode", xml_declaration=True)


def export_features(features: Iterable[Feature], fmt: FileFormat) -> str:
    if fmt == "kml":
        return export_kml(features)
    return export_geojson(features)


def import_features(text: str, fmt: FileFormat) -> list[Feature]:
    if fmt == "kml":
        return import_kml(text)
    return import_geojson(text)
