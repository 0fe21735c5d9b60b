from __future__ import annotations

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from layers.types import Feature


OperationType = Literal["create", "modify", "delete", "style", "move"]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class HistoryOperation:
    type: OperationType
    layer_id: str
    feature: Feature | None = None
    previous_state: Any = None
    new_state: Any = None
    timestamp: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "layerId": self.layer_id,
            "feature": self.feature.to_geojson() if self.feature is not None else None,
            "previousState": _jsonable(self.previous_state),
            "newState": _jsonable(self.new_state),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryOperation":
        feature = data.get("feature")
        return cls(
            type=data["type"],
            layer_id=str(data.get("layerId") or ""),
            feature=Feature.from_geojson(feature) if feature else None,
            previous_state=copy.deepcopy(data.get("previousState")),
            new_state=copy.deepcopy(data.get("newState")),
            timestamp=int(data.get("timestamp") or 0),
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, Feature):
        return value.to_geojson()
    return copy.deepcopy(value)


OperationCallback = Callable[[HistoryOperation], None]


class HistoryTracker:
    """
    Bounded undo/redo stacks of store operations.

    Both stacks drop their oldest entry on overflow. Recording a new operation clears
    the redo stack. Undo/redo on an empty stack do nothing.
    """

    def __init__(
        self,
        *,
        max_history_size: int = 50,
        on_undo: OperationCallback | None = None,
        on_redo: OperationCallback | None = None,
        logger: logging.Logger | None = None,
    ):
        if max_history_size < 1:
            raise ValueError("max_history_size must be >= 1")
        self._max = max_history_size
        self._undo: deque[HistoryOperation] = deque(maxlen=max_history_size)
        self._redo: deque[HistoryOperation] = deque(maxlen=max_history_size)
        self.on_undo = on_undo
        self.on_redo = on_redo
        self._log = logger or logging.getLogger(__name__)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_stack_size(self) -> int:
        return len(self._undo)

    @property
    def redo_stack_size(self) -> int:
        return len(self._redo)

    def undo_stack(self) -> list[HistoryOperation]:
        return list(self._undo)

    def redo_stack(self) -> list[HistoryOperation]:
        return list(self._redo)

    def push_operation(self, operation: HistoryOperation) -> HistoryOperation:
        self._undo.append(operation)
        self._redo.clear()
        self._log.debug(
            "operation_recorded type=%s layer=%s", operation.type, operation.layer_id
        )
        return operation

    def record_create(self, layer_id: str, feature: Feature) -> HistoryOperation:
        return self.push_operation(
            HistoryOperation(
                type="create",
                layer_id=layer_id,
                feature=feature.copy(),
                new_state=feature.copy(),
            )
        )

    def record_modify(
        self, layer_id: str, feature: Feature, previous_state: Any, new_state: Any
    ) -> HistoryOperation:
        return self.push_operation(
            HistoryOperation(
                type="modify",
                layer_id=layer_id,
                feature=feature.copy(),
                previous_state=copy.deepcopy(previous_state),
                new_state=copy.deepcopy(new_state),
            )
        )

    def record_delete(
        self, layer_id: str, feature: Feature, index: int | None = None
    ) -> HistoryOperation:
        # new_state carries the position the feature was removed from.
        return self.push_operation(
            HistoryOperation(
                type="delete",
                layer_id=layer_id,
                feature=feature.copy(),
                previous_state=feature.copy(),
                new_state={"index": index} if index is not None else None,
            )
        )

    def record_style(
        self,
        layer_id: str,
        feature: Feature,
        previous_style: dict[str, Any] | None,
        new_style: dict[str, Any] | None,
    ) -> HistoryOperation:
        return self.push_operation(
            HistoryOperation(
                type="style",
                layer_id=layer_id,
                feature=feature.copy(),
                previous_state=copy.deepcopy(previous_style),
                new_state=copy.deepcopy(new_style),
            )
        )

    def record_move(
        self,
        layer_id: str,
        feature: Feature,
        previous_geometry: dict[str, Any],
        new_geometry: dict[str, Any],
    ) -> HistoryOperation:
        return self.push_operation(
            HistoryOperation(
                type="move",
                layer_id=layer_id,
                feature=feature.copy(),
                previous_state=copy.deepcopy(previous_geometry),
                new_state=copy.deepcopy(new_geometry),
            )
        )

    def undo(self) -> HistoryOperation | None:
        if not self._undo:
            return None
        operation = self._undo.pop()
        self._redo.append(operation)
        if self.on_undo is not None:
            self.on_undo(operation)
        self._log.debug("operation_undone type=%s", operation.type)
        return operation

    def redo(self) -> HistoryOperation | None:
        if not self._redo:
            return None
        operation = self._redo.pop()
        self._undo.append(operation)
        if self.on_redo is not None:
            self.on_redo(operation)
        self._log.debug("operation_redone type=%s", operation.type)
        return operation

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
        self._log.debug("history_cleared")

    def to_dict(self) -> dict[str, Any]:
        return {
            "undoStack": [op.to_dict() for op in self._undo],
            "redoStack": [op.to_dict() for op in self._redo],
        }

    def load(self, data: dict[str, Any] | None) -> None:
        """
        Restore both stacks from `to_dict()` output (callbacks are not invoked).
        """
        self._undo.clear()
        self._redo.clear()
        if not data:
            return
        for op in data.get("undoStack") or []:
            self._undo.append(HistoryOperation.from_dict(op))
        for op in data.get("redoStack") or []:
            self._redo.append(HistoryOperation.from_dict(op))
