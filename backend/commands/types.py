from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

from layers.types import Feature, FeatureId


CommandType = Literal[
    "zoom_to",
    "add_feature",
    "modify_feature",
    "remove_feature",
    "style_feature",
    "measure",
    "buffer",
]

COMMAND_TYPES: frozenset[str] = frozenset(
    {
        "zoom_to",
        "add_feature",
        "modify_feature",
        "remove_feature",
        "style_feature",
        "measure",
        "buffer",
    }
)

MEASURE_TYPES = frozenset({"distance", "area"})
BUFFER_UNITS = frozenset({"kilometers", "miles", "meters"})


@dataclass(frozen=True)
class ZoomTo:
    """
    `coordinates` is (lat, lon), in the order the directive writes them.
    """

    coordinates: tuple[float, float]
    zoom: int | None = None
    type: Literal["zoom_to"] = field(default="zoom_to", init=False)

    def parameters(self) -> dict[str, Any]:
        out: dict[str, Any] = {"coordinates": [self.coordinates[0], self.coordinates[1]]}
        if self.zoom is not None:
            out["zoom"] = self.zoom
        return out


@dataclass(frozen=True)
class AddFeature:
    feature: Feature
    layer_id: str | None = None
    style: dict[str, Any] | None = None
    type: Literal["add_feature"] = field(default="add_feature", init=False)

    def parameters(self) -> dict[str, Any]:
        out: dict[str, Any] = {"feature": self.feature.to_geojson()}
        if self.layer_id is not None:
            out["layerId"] = self.layer_id
        if self.style is not None:
            out["style"] = dict(self.style)
        return out


@dataclass(frozen=True)
class ModifyFeature:
    feature_id: FeatureId
    properties: dict[str, Any]
    type: Literal["modify_feature"] = field(default="modify_feature", init=False)

    def parameters(self) -> dict[str, Any]:
        return {"featureId": self.feature_id, "properties": dict(self.properties)}


@dataclass(frozen=True)
class RemoveFeature:
    feature_id: FeatureId
    layer_id: str | None = None
    type: Literal["remove_feature"] = field(default="remove_feature", init=False)

    def parameters(self) -> dict[str, Any]:
        out: dict[str, Any] = {"featureId": self.feature_id}
        if self.layer_id is not None:
            out["layerId"] = self.layer_id
        return out


@dataclass(frozen=True)
class StyleFeature:
    feature_id: FeatureId
    style: dict[str, Any]
    type: Literal["style_feature"] = field(default="style_feature", init=False)

    def parameters(self) -> dict[str, Any]:
        return {"featureId": self.feature_id, "style": dict(self.style)}


@dataclass(frozen=True)
class Measure:
    measure_type: Literal["distance", "area"]
    features: tuple[Feature, ...]
    type: Literal["measure"] = field(default="measure", init=False)

    def parameters(self) -> dict[str, Any]:
        return {
            "type": self.measure_type,
            "features": [f.to_geojson() for f in self.features],
        }


@dataclass(frozen=True)
class Buffer:
    feature: Feature
    distance: float
    units: Literal["kilometers", "miles", "meters"] = "kilometers"
    type: Literal["buffer"] = field(default="buffer", init=False)

    def parameters(self) -> dict[str, Any]:
        return {
            "feature": self.feature.to_geojson(),
            "distance": self.distance,
            "units": self.units,
        }


MapCommand = Union[
    ZoomTo, AddFeature, ModifyFeature, RemoveFeature, StyleFeature, Measure, Buffer
]


def command_to_dict(command: MapCommand) -> dict[str, Any]:
    """
    Wire/log shape of a command: `{"type": ..., "parameters": {...}}`.
    """
    return {"type": command.type, "parameters": command.parameters()}
