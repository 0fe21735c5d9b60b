from __future__ import annotations

import copy
import logging
from typing import Any, Sequence

from errors import FeatureNotFoundError, LayerNotFoundError, MapChatError
from geo.edit import FeatureEditor
from geo.spatial import SpatialAnalyzer
from history.tracker import HistoryOperation, HistoryTracker
from layers.store import LayerStore
from layers.types import Feature, FeatureId, Layer


DEFAULT_LAYER_ID = "features"


class InMemoryMapSurface:
    """
    MapSurface over a LayerStore: server-side state for what the client map shows.

    Every mutation is recorded in the history tracker; undo/redo replay the recorded
    before/after states against the store. Missing targets raise so the executor's
    per-command boundary reports them.
    """

    def __init__(
        self,
        store: LayerStore,
        *,
        analyzer: SpatialAnalyzer | None = None,
        history: HistoryTracker | None = None,
        editor: FeatureEditor | None = None,
        logger: logging.Logger | None = None,
    ):
        self._log = logger or logging.getLogger(__name__)
        self.store = store
        self.analyzer = analyzer or SpatialAnalyzer(logger=logger)
        self.editor = editor or FeatureEditor(logger=logger)
        self.history = history or HistoryTracker(logger=logger)
        self.history.on_undo = self._revert
        self.history.on_redo = self._reapply

    # -----------------------------------------------------------------------------
    # MapSurface
    # -----------------------------------------------------------------------------

    def zoom_to(self, coordinates: tuple[float, float], zoom: int | None = None) -> None:
        self.store.set_view(coordinates, zoom)

    def add_feature(
        self,
        feature: Feature,
        layer_id: str | None,
        style: dict[str, Any] | None = None,
    ) -> Feature:
        layer = self.store.ensure_layer(layer_id or DEFAULT_LAYER_ID)
        incoming = Feature.from_geojson(feature)
        if style:
            incoming.style = {**(incoming.style or {}), **style}
        stored = self.store.insert_feature(layer.id, incoming)
        if stored is None:
            raise LayerNotFoundError(layer.id)
        self.history.record_create(layer.id, stored)
        return stored

    def modify_feature(self, feature_id: FeatureId, properties: dict[str, Any]) -> None:
        layer, feature = self._require(feature_id)
        previous = copy.deepcopy(feature.properties)
        self.store.modify_feature(layer.id, feature.id, properties)  # type: ignore[arg-type]
        self.history.record_modify(layer.id, feature, previous, feature.properties)

    def remove_feature(self, feature_id: FeatureId, layer_id: str | None = None) -> None:
        if layer_id is None:
            layer, feature = self._require(feature_id)
        else:
            found_layer = self.store.resolve_layer(layer_id)
            if found_layer is None:
                raise LayerNotFoundError(layer_id)
            layer = found_layer
            index = self.store.feature_index(layer.id, feature_id)
            if index is None:
                raise FeatureNotFoundError(feature_id, layer_id)
            feature = layer.features[index]

        index = self.store.feature_index(layer.id, feature.id)  # type: ignore[arg-type]
        self.history.record_delete(layer.id, feature, index)
        self.store.remove_feature(layer.id, feature.id)  # type: ignore[arg-type]

    def style_feature(self, feature_id: FeatureId, style: dict[str, Any]) -> None:
        layer, feature = self._require(feature_id)
        previous = copy.deepcopy(feature.style)
        self.store.style_feature(feature.id, style)  # type: ignore[arg-type]
        self.history.record_style(layer.id, feature, previous, feature.style)

    def measure(self, measure_type: str, features: Sequence[Feature]) -> float:
        return self.analyzer.measure(measure_type, list(features))  # type: ignore[arg-type]

    def buffer(self, feature: Feature, distance: float, units: str) -> Feature:
        return self.analyzer.create_buffer(feature, distance, units)  # type: ignore[arg-type]

    # -----------------------------------------------------------------------------
    # Vertex editing
    # -----------------------------------------------------------------------------

    def move_vertex(
        self, feature_id: FeatureId, index: int, coordinates: Sequence[float]
    ) -> Feature:
        layer, feature = self._require(feature_id)
        updated = self.editor.move_vertex(feature, index, coordinates)
        if updated is feature:
            raise MapChatError(f"Cannot move vertex {index} of feature {feature_id}")
        previous = copy.deepcopy(feature.geometry)
        self.store.set_feature_geometry(feature.id, updated.geometry)  # type: ignore[arg-type]
        self.history.record_move(layer.id, feature, previous, updated.geometry)
        return feature

    # -----------------------------------------------------------------------------
    # History replay
    # -----------------------------------------------------------------------------

    def _require(self, feature_id: FeatureId) -> tuple[Layer, Feature]:
        found = self.store.find_feature(feature_id)
        if found is None:
            raise FeatureNotFoundError(feature_id)
        return found

    def _revert(self, op: HistoryOperation) -> None:
        fid = op.feature.id if op.feature is not None else None
        if op.type == "create":
            self.store.remove_feature(op.layer_id, fid)  # type: ignore[arg-type]
        elif op.type == "delete":
            layer = self.store.ensure_layer(op.layer_id)
            index = (op.new_state or {}).get("index")
            self.store.insert_feature(layer.id, op.previous_state, index=index)
        elif op.type == "modify":
            self.store.replace_properties(fid, op.previous_state or {})  # type: ignore[arg-type]
        elif op.type == "style":
            self.store.style_feature(fid, op.previous_state, replace=True)  # type: ignore[arg-type]
        elif op.type == "move":
            self.store.set_feature_geometry(fid, op.previous_state)  # type: ignore[arg-type]
        self._log.debug("history_reverted type=%s feature=%s", op.type, fid)

    def _reapply(self, op: HistoryOperation) -> None:
        fid = op.feature.id if op.feature is not None else None
        if op.type == "create":
            layer = self.store.ensure_layer(op.layer_id)
            self.store.insert_feature(layer.id, op.new_state)
        elif op.type == "delete":
            self.store.remove_feature(op.layer_id, fid)  # type: ignore[arg-type]
        elif op.type == "modify":
            self.store.replace_properties(fid, op.new_state or {})  # type: ignore[arg-type]
        elif op.type == "style":
            self.store.style_feature(fid, op.new_state, replace=True)  # type: ignore[arg-type]
        elif op.type == "move":
            self.store.set_feature_geometry(fid, op.new_state)  # type: ignore[arg-type]
        self._log.debug("history_reapplied type=%s feature=%s", op.type, fid)
