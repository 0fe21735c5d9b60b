from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Callable, Iterator

from errors import LayerNotFoundError
from layers.types import (
    Feature,
    FeatureId,
    Layer,
    LayerGroup,
    LayerType,
    MapState,
    same_id,
)


DEFAULT_GROUP_NAME = "AI Layers"

StoreListener = Callable[[str, dict[str, Any]], None]


def _new_id() -> str:
    return uuid.uuid4().hex


class LayerStore:
    """
    Authoritative in-memory model: layer groups -> layers -> features.

    Lookups scan every group in order. Misses return False/None and log a warning; nothing
    here raises for an unknown id. Feature ids are unique store-wide only as long as callers
    supply non-colliding ids; generated ids are random UUIDs.
    """

    def __init__(
        self,
        initial_state: MapState | dict[str, Any] | None = None,
        *,
        logger: logging.Logger | None = None,
        id_factory: Callable[[], str] = _new_id,
    ):
        self._log = logger or logging.getLogger(__name__)
        self._new_id = id_factory
        self._listeners: list[StoreListener] = []
        self._state = self._coerce_state(initial_state)

    @staticmethod
    def _coerce_state(state: MapState | dict[str, Any] | None) -> MapState:
        if state is None:
            return MapState()
        if isinstance(state, MapState):
            return copy.deepcopy(state)
        return MapState.from_dict(state)

    # -----------------------------------------------------------------------------
    # State + change notification
    # -----------------------------------------------------------------------------

    def get_state(self) -> MapState:
        return self._state

    def snapshot(self) -> dict[str, Any]:
        return self._state.to_dict()

    def load_state(self, state: MapState | dict[str, Any]) -> None:
        self._state = self._coerce_state(state)
        self._emit("load_state", {})

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        self._log.debug("map_command type=%s %r", event, payload)
        for listener in list(self._listeners):
            listener(event, payload)

    # -----------------------------------------------------------------------------
    # Groups + layers
    # -----------------------------------------------------------------------------

    def create_layer_group(self, name: str, *, group_id: str | None = None) -> LayerGroup:
        group = LayerGroup(id=group_id or self._new_id(), name=name)
        self._state.layers.append(group)
        self._emit("create_layer_group", {"groupId": group.id, "name": name})
        return group

    def get_group_by_id(self, group_id: str) -> LayerGroup | None:
        for group in self._state.layers:
            if group.id == group_id:
                return group
        return None

    def create_layer(
        self,
        group_id: str,
        name: str,
        type: LayerType = "feature",
        *,
        layer_id: str | None = None,
    ) -> Layer | None:
        group = self.get_group_by_id(group_id)
        if group is None:
            self._log.warning("layer_error Group %s not found", group_id)
            return None
        if layer_id is not None and self.get_layer_by_id(layer_id) is not None:
            self._log.warning("layer_error Layer %s already exists", layer_id)
            return None

        layer = Layer(id=layer_id or self._new_id(), name=name, type=type)
        group.layers.append(layer)
        self._emit(
            "create_layer",
            {"groupId": group_id, "layerId": layer.id, "name": name, "layerType": type},
        )
        return layer

    def iter_layers(self) -> Iterator[tuple[LayerGroup, Layer]]:
        for group in self._state.layers:
            for layer in group.layers:
                yield group, layer

    def get_layer_by_id(self, layer_id: str) -> Layer | None:
        for _group, layer in self.iter_layers():
            if layer.id == layer_id:
                return layer
        return None

    def resolve_layer(self, layer_ref: str) -> Layer | None:
        """
        Layer by id, else the first layer whose name matches.
        """
        layer = self.get_layer_by_id(layer_ref)
        if layer is not None:
            return layer
        for _group, layer in self.iter_layers():
            if layer.name == layer_ref:
                return layer
        return None

    def ensure_layer(
        self, layer_ref: str, *, group_name: str = DEFAULT_GROUP_NAME
    ) -> Layer:
        """
        Resolve `layer_ref`, or create a layer with that id (and name) in `group_name`.
        """
        layer = self.resolve_layer(layer_ref)
        if layer is not None:
            return layer

        group = next((g for g in self._state.layers if g.name == group_name), None)
        if group is None:
            group = self.create_layer_group(group_name)
        created = self.create_layer(group.id, layer_ref, "feature", layer_id=layer_ref)
        if created is None:
            raise LayerNotFoundError(layer_ref)
        return created

    def remove_layer(self, layer_id: str) -> bool:
        for group in self._state.layers:
            for i, layer in enumerate(group.layers):
                if layer.id == layer_id:
                    del group.layers[i]
                    if self._state.active_layer_id == layer_id:
                        self._state.active_layer_id = None
                    self._emit("remove_layer", {"layerId": layer_id})
                    return True
        self._log.warning("layer_error Layer %s not found", layer_id)
        return False

    def set_layer_visibility(self, layer_id: str, visible: bool) -> bool:
        layer = self.get_layer_by_id(layer_id)
        if layer is None:
            self._log.warning("layer_error Layer %s not found", layer_id)
            return False
        layer.visible = bool(visible)
        self._emit("set_layer_visibility", {"layerId": layer_id, "visible": layer.visible})
        return True

    def set_group_visibility(self, group_id: str, visible: bool) -> bool:
        group = self.get_group_by_id(group_id)
        if group is None:
            self._log.warning("layer_error Group %s not found", group_id)
            return False
        group.visible = bool(visible)
        self._emit("set_group_visibility", {"groupId": group_id, "visible": group.visible})
        return True

    def set_layer_style(self, layer_id: str, style: dict[str, Any]) -> bool:
        layer = self.get_layer_by_id(layer_id)
        if layer is None:
            self._log.warning("layer_error Layer %s not found", layer_id)
            return False
        layer.style = dict(style)
        self._emit("set_layer_style", {"layerId": layer_id, "style": layer.style})
        return True

    # -----------------------------------------------------------------------------
    # Features
    # -----------------------------------------------------------------------------

    def insert_feature(
        self,
        layer_id: str,
        feature: Feature | dict[str, Any],
        *,
        index: int | None = None,
    ) -> Feature | None:
        """
        Store a copy of `feature` in the layer and return it (with its id assigned).
        """
        layer = self.get_layer_by_id(layer_id)
        if layer is None:
            self._log.warning("layer_error Layer %s not found", layer_id)
            return None

        stored = Feature.from_geojson(feature)
        if stored.id is None or stored.id == "":
            stored.id = self._new_id()
        elif self.get_feature_by_id(stored.id) is not None:
            self._log.warning(
                "layer_warning Feature id %s is already used; lookups return the first match",
                stored.id,
            )

        if index is None:
            layer.features.append(stored)
        else:
            layer.features.insert(max(0, min(index, len(layer.features))), stored)
        self._emit("add_feature", {"layerId": layer_id, "featureId": stored.id})
        return stored

    def add_feature_to_layer(self, layer_id: str, feature: Feature | dict[str, Any]) -> bool:
        return self.insert_feature(layer_id, feature) is not None

    def remove_feature(self, layer_id: str, feature_id: FeatureId) -> bool:
        layer = self.get_layer_by_id(layer_id)
        if layer is not None:
            for i, f in enumerate(layer.features):
                if same_id(f.id, feature_id):
                    del layer.features[i]
                    self._drop_from_selection(feature_id)
                    self._emit("remove_feature", {"layerId": layer_id, "featureId": feature_id})
                    return True
        self._log.warning(
            "layer_error Feature %s or layer %s not found", feature_id, layer_id
        )
        return False

    def modify_feature(
        self, layer_id: str, feature_id: FeatureId, properties: dict[str, Any]
    ) -> bool:
        """
        Shallow-merge `properties` into the feature's properties.
        """
        feature = self._feature_in_layer(layer_id, feature_id)
        if feature is None:
            self._log.warning(
                "layer_error Feature %s or layer %s not found", feature_id, layer_id
            )
            return False
        feature.properties = {**feature.properties, **properties}
        self._emit(
            "modify_feature",
            {"layerId": layer_id, "featureId": feature_id, "properties": properties},
        )
        return True

    def replace_properties(self, feature_id: FeatureId, properties: dict[str, Any]) -> bool:
        found = self.find_feature(feature_id)
        if found is None:
            self._log.warning("layer_error Feature %s not found", feature_id)
            return False
        layer, feature = found
        feature.properties = copy.deepcopy(properties)
        self._emit("replace_properties", {"layerId": layer.id, "featureId": feature_id})
        return True

    def style_feature(
        self,
        feature_id: FeatureId,
        style: dict[str, Any] | None,
        *,
        replace: bool = False,
    ) -> bool:
        """
        Merge `style` into the feature's own style overrides (or replace them).
        None clears them.
        """
        found = self.find_feature(feature_id)
        if found is None:
            self._log.warning("layer_error Feature %s not found", feature_id)
            return False
        layer, feature = found
        if style is None:
            feature.style = None
        elif replace:
            feature.style = dict(style)
        else:
            feature.style = {**(feature.style or {}), **style}
        self._emit(
            "style_feature", {"layerId": layer.id, "featureId": feature_id, "style": style}
        )
        return True

    def set_feature_geometry(self, feature_id: FeatureId, geometry: dict[str, Any]) -> bool:
        found = self.find_feature(feature_id)
        if found is None:
            self._log.warning("layer_error Feature %s not found", feature_id)
            return False
        layer, feature = found
        feature.geometry = copy.deepcopy(geometry)
        self._emit("set_feature_geometry", {"layerId": layer.id, "featureId": feature_id})
        return True

    def _feature_in_layer(self, layer_id: str, feature_id: FeatureId) -> Feature | None:
        layer = self.get_layer_by_id(layer_id)
        if layer is None:
            return None
        return next((f for f in layer.features if same_id(f.id, feature_id)), None)

    def find_feature(self, feature_id: FeatureId) -> tuple[Layer, Feature] | None:
        for _group, layer in self.iter_layers():
            for f in layer.features:
                if same_id(f.id, feature_id):
                    return layer, f
        return None

    def get_feature_by_id(self, feature_id: FeatureId) -> Feature | None:
        found = self.find_feature(feature_id)
        return found[1] if found is not None else None

    def feature_index(self, layer_id: str, feature_id: FeatureId) -> int | None:
        layer = self.get_layer_by_id(layer_id)
        if layer is None:
            return None
        for i, f in enumerate(layer.features):
            if same_id(f.id, feature_id):
                return i
        return None

    def all_features(self, *, visible_only: bool = False) -> list[Feature]:
        out: list[Feature] = []
        for group, layer in self.iter_layers():
            if visible_only and not (group.visible and layer.visible):
                continue
            out.extend(layer.features)
        return out

    # -----------------------------------------------------------------------------
    # View + selection
    # -----------------------------------------------------------------------------

    def set_view(self, center: tuple[float, float], zoom: float | None = None) -> None:
        """
        `center` is (lat, lon).
        """
        self._state.center = (float(center[0]), float(center[1]))
        if zoom is not None:
            self._state.zoom = zoom
        self._state.view = {
            "center": [self._state.center[0], self._state.center[1]],
            "zoom": self._state.zoom,
        }
        self._emit("zoom_to", {"center": list(self._state.center), "zoom": zoom})

    def set_active_layer(self, layer_id: str | None) -> bool:
        if layer_id is not None and self.get_layer_by_id(layer_id) is None:
            self._log.warning("layer_error Layer %s not found", layer_id)
            return False
        self._state.active_layer_id = layer_id
        return True

    def selected_feature_ids(self) -> list[FeatureId]:
        selection = self._state.selection or {}
        return list(selection.get("selectedFeatures") or [])

    def select_feature(self, feature_id: FeatureId, *, multi: bool = False) -> list[FeatureId]:
        """
        Toggle `feature_id` in the selection. Without `multi` it replaces the selection.
        """
        if self.get_feature_by_id(feature_id) is None:
            self._log.warning("layer_error Feature %s not found", feature_id)
            return self.selected_feature_ids()

        current = self.selected_feature_ids()
        if any(same_id(fid, feature_id) for fid in current):
            selected = [fid for fid in current if not same_id(fid, feature_id)]
        else:
            selected = [*current, feature_id] if multi else [feature_id]

        self._set_selection(selected)
        self._log.debug(
            "map_command type=feature_selected featureId=%s totalSelected=%d",
            feature_id,
            len(selected),
        )
        return selected

    def clear_selection(self) -> None:
        self._set_selection([])
        self._log.debug("map_command type=selection_cleared")

    def _drop_from_selection(self, feature_id: FeatureId) -> None:
        current = self.selected_feature_ids()
        if any(same_id(fid, feature_id) for fid in current):
            self._set_selection([fid for fid in current if not same_id(fid, feature_id)])

    def _set_selection(self, selected: list[FeatureId]) -> None:
        self._state.selection = {
            "selectedFeatures": list(selected),
            "activeLayerId": self._state.active_layer_id,
        }
        self._state.selected_feature_id = selected[-1] if selected else None
