from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from commands.types import MapCommand, command_to_dict
from layers.types import Feature, FeatureId


class MapSurface(Protocol):
    """
    Capabilities the command executor needs from a map.

    - InMemoryMapSurface: applies commands to a LayerStore (server-side state)
    - a rendering client can implement the same seven methods over its own map
    """

    def zoom_to(self, coordinates: tuple[float, float], zoom: int | None = None) -> None: ...

    def add_feature(
        self,
        feature: Feature,
        layer_id: str | None,
        style: dict[str, Any] | None = None,
    ) -> None: ...

    def modify_feature(self, feature_id: FeatureId, properties: dict[str, Any]) -> None: ...

    def remove_feature(self, feature_id: FeatureId, layer_id: str | None = None) -> None: ...

    def style_feature(self, feature_id: FeatureId, style: dict[str, Any]) -> None: ...

    def measure(self, measure_type: str, features: Sequence[Feature]) -> float: ...

    def buffer(self, feature: Feature, distance: float, units: str) -> Feature: ...


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of one command. `result` holds the added or buffered feature, or the
    measurement, when the command produces one.
    """

    command: MapCommand
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        result = self.result.to_geojson() if isinstance(self.result, Feature) else self.result
        return {
            "command": command_to_dict(self.command),
            "success": self.success,
            "result": result,
            "error": self.error,
            "durationMs": round(self.duration_ms, 3),
        }
