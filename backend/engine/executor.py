from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from commands.parser import extract_map_commands
from commands.types import (
    AddFeature,
    Buffer,
    MapCommand,
    Measure,
    ModifyFeature,
    RemoveFeature,
    StyleFeature,
    ZoomTo,
    command_to_dict,
)
from engine.types import CommandResult, MapSurface
from telemetry.monitor import PerformanceMonitor
from telemetry.store import TelemetryStore


# Buffered geometries always land here.
BUFFERS_LAYER_ID = "buffers"


class MapService:
    """
    Executes the map directives embedded in AI response text against a MapSurface.

    Each command runs in its own failure boundary: an exception is logged with the
    command payload and the next command still runs.
    """

    def __init__(
        self,
        surface: MapSurface,
        *,
        logger: logging.Logger | None = None,
        telemetry: TelemetryStore | None = None,
        monitor: PerformanceMonitor | None = None,
    ):
        self.surface = surface
        self._log = logger or logging.getLogger(__name__)
        self._telemetry = telemetry
        self._monitor = monitor

    def execute_map_commands(self, text: str) -> str:
        """
        Apply every directive in `text`; the text itself is returned unchanged.
        """
        self.execute_commands(extract_map_commands(text, logger=self._log))
        return text

    def execute_commands(self, commands: Sequence[MapCommand]) -> list[CommandResult]:
        return [self.execute_command(cmd) for cmd in commands]

    def execute_command(self, command: MapCommand) -> CommandResult:
        t0 = time.perf_counter()
        try:
            result = self._dispatch(command)
        except Exception as e:
            duration_ms = (time.perf_counter() - t0) * 1000.0
            self._log.error(
                "map_command_error type=%s command=%r error=%s",
                command.type,
                command_to_dict(command),
                e,
            )
            self._track(command, False, duration_ms, f"{type(e).__name__}: {e}")
            return CommandResult(
                command=command,
                success=False,
                error=f"{type(e).__name__}: {e}",
                duration_ms=duration_ms,
            )

        duration_ms = (time.perf_counter() - t0) * 1000.0
        self._log.info("map_command_success type=%s", command.type)
        self._log.debug("map_command %r", command_to_dict(command))
        self._track(command, True, duration_ms, None)
        return CommandResult(
            command=command, success=True, result=result, duration_ms=duration_ms
        )

    def _dispatch(self, command: MapCommand) -> Any:
        s = self.surface
        if isinstance(command, ZoomTo):
            s.zoom_to(command.coordinates, command.zoom)
            return None
        if isinstance(command, AddFeature):
            return s.add_feature(command.feature, command.layer_id, command.style)
        if isinstance(command, ModifyFeature):
            s.modify_feature(command.feature_id, command.properties)
            return None
        if isinstance(command, RemoveFeature):
            s.remove_feature(command.feature_id, command.layer_id)
            return None
        if isinstance(command, StyleFeature):
            s.style_feature(command.feature_id, command.style)
            return None
        if isinstance(command, Measure):
            value = s.measure(command.measure_type, list(command.features))
            self._log.info(
                "measurement_result type=%s value=%s", command.measure_type, value
            )
            return value
        if isinstance(command, Buffer):
            buffered = s.buffer(command.feature, command.distance, command.units)
            s.add_feature(buffered, BUFFERS_LAYER_ID)
            return buffered
        raise TypeError(f"Unsupported command: {command!r}")

    def _track(
        self, command: MapCommand, success: bool, duration_ms: float, error: str | None
    ) -> None:
        if self._monitor is not None:
            self._monitor.track_operation(
                f"command.{command.type}", duration_ms, {"success": success}
            )
        if self._telemetry is not None:
            self._telemetry.record(
                command_type=command.type,
                success=success,
                duration_ms=duration_ms,
                error=error,
                payload=command_to_dict(command),
            )
