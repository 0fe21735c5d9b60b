from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias, Union


FeatureId: TypeAlias = Union[str, int]
LayerType = Literal["feature", "marker", "vector"]

GEOMETRY_TYPES = frozenset(
    {
        "Point",
        "MultiPoint",
        "LineString",
        "MultiLineString",
        "Polygon",
        "MultiPolygon",
        "GeometryCollection",
    }
)


def same_id(a: FeatureId | None, b: FeatureId | None) -> bool:
    # Directive arguments are strings, stored ids may be numbers.
    if a is None or b is None:
        return False
    return str(a) == str(b)


@dataclass
class Feature:
    """
    A GeoJSON-style feature: geometry + open-ended properties + optional id.

    `properties` is always a dict (never None). `style` holds per-feature rendering
    overrides (Leaflet path options: color, fillColor, weight, opacity, ...).
    """

    geometry: dict[str, Any]
    properties: dict[str, Any] = field(default_factory=dict)
    id: FeatureId | None = None
    style: dict[str, Any] | None = None

    @property
    def geometry_type(self) -> str | None:
        gtype = (self.geometry or {}).get("type")
        return gtype if isinstance(gtype, str) else None

    @classmethod
    def from_geojson(cls, obj: Any) -> "Feature":
        """
        Build a Feature from a GeoJSON Feature or a bare geometry object.

        Raises ValueError for anything that is neither.
        """
        if isinstance(obj, Feature):
            return obj.copy()
        if not isinstance(obj, dict):
            raise ValueError(f"Expected a GeoJSON object, got {type(obj).__name__}")

        otype = obj.get("type")
        if otype in GEOMETRY_TYPES:
            return cls(geometry=copy.deepcopy(obj))
        if otype != "Feature":
            raise ValueError(f"Unsupported GeoJSON type: {otype!r}")

        geometry = obj.get("geometry")
        if not isinstance(geometry, dict) or geometry.get("type") not in GEOMETRY_TYPES:
            raise ValueError("Feature geometry is missing or has an unknown type")

        properties = obj.get("properties") or {}
        if not isinstance(properties, dict):
            raise ValueError("Feature properties must be an object")

        fid = obj.get("id")
        if fid is not None and (isinstance(fid, bool) or not isinstance(fid, (str, int))):
            raise ValueError(f"Feature id must be a string or integer, got {fid!r}")

        style = obj.get("style")
        return cls(
            geometry=copy.deepcopy(geometry),
            properties=copy.deepcopy(properties),
            id=fid,
            style=dict(style) if isinstance(style, dict) else None,
        )

    def to_geojson(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": "Feature",
            "geometry": copy.deepcopy(self.geometry),
            "properties": copy.deepcopy(self.properties),
        }
        if self.id is not None:
            out["id"] = self.id
        if self.style:
            out["style"] = dict(self.style)
        return out

    def copy(self) -> "Feature":
        return Feature(
            geometry=copy.deepcopy(self.geometry),
            properties=copy.deepcopy(self.properties),
            id=self.id,
            style=dict(self.style) if self.style is not None else None,
        )


@dataclass
class Layer:
    """
    Named, ordered collection of features with shared visibility and default style.

    Layer names are display labels and are not required to be unique; ids are.
    """

    id: str
    name: str
    type: LayerType = "feature"
    visible: bool = True
    features: list[Feature] = field(default_factory=list)
    style: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "visible": self.visible,
            "features": [f.to_geojson() for f in self.features],
        }
        if self.style is not None:
            out["style"] = dict(self.style)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Layer":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            type=data.get("type") or "feature",
            visible=bool(data.get("visible", True)),
            features=[Feature.from_geojson(f) for f in data.get("features") or []],
            style=dict(data["style"]) if isinstance(data.get("style"), dict) else None,
        )


@dataclass
class LayerGroup:
    id: str
    name: str
    layers: list[Layer] = field(default_factory=list)
    visible: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "visible": self.visible,
            "layers": [layer.to_dict() for layer in self.layers],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LayerGroup":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            visible=bool(data.get("visible", True)),
            layers=[Layer.from_dict(layer) for layer in data.get("layers") or []],
        )


@dataclass
class MapState:
    """
    Externally observable snapshot of the map.

    `center` is (lat, lon) like the zoom_to directive; feature coordinates stay GeoJSON
    (lon, lat). Serialized keys follow the persisted JSON document (camelCase).
    """

    center: tuple[float, float] = (0.0, 0.0)
    zoom: float = 2
    layers: list[LayerGroup] = field(default_factory=list)
    active_layer_id: str | None = None
    selected_feature_id: FeatureId | None = None
    history: dict[str, Any] | None = None
    selection: dict[str, Any] | None = None
    view: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "center": [self.center[0], self.center[1]],
            "zoom": self.zoom,
            "layers": [group.to_dict() for group in self.layers],
        }
        if self.active_layer_id is not None:
            out["activeLayerId"] = self.active_layer_id
        if self.selected_feature_id is not None:
            out["selectedFeatureId"] = self.selected_feature_id
        if self.history is not None:
            out["history"] = copy.deepcopy(self.history)
        if self.selection is not None:
            out["selection"] = copy.deepcopy(self.selection)
        if self.view is not None:
            out["view"] = copy.deepcopy(self.view)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MapState":
        center = data.get("center") or [0.0, 0.0]
        return cls(
            center=(float(center[0]), float(center[1])),
            zoom=data.get("zoom", 2),
            layers=[LayerGroup.from_dict(g) for g in data.get("layers") or []],
            active_layer_id=data.get("activeLayerId"),
            selected_feature_id=data.get("selectedFeatureId"),
            history=copy.deepcopy(data.get("history")),
            selection=copy.deepcopy(data.get("selection")),
            view=copy.deepcopy(data.get("view")),
        )
