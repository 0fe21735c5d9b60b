from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from errors import PersistenceError
from layers.types import MapState
from persistence.sink import KeyValueSink


STORAGE_KEY = "map-chat-state"
AUTO_SAVE_INTERVAL_S = 30.0

StateDict = dict[str, Any]


def _as_dict(state: MapState | StateDict) -> StateDict:
    return state.to_dict() if isinstance(state, MapState) else state


def _canonical(state: StateDict) -> str:
    return json.dumps(state, sort_keys=True, separators=(",", ":"), default=str)


class MapPersistence:
    """
    Saves the JSON map snapshot under a single key of a KeyValueSink.

    Save, load and clear failures are logged and reported to `on_state_error`; they are
    never raised. `import_json` is the exception: a caller importing a document wants
    to know it was rejected.
    """

    def __init__(
        self,
        sink: KeyValueSink,
        *,
        key: str = STORAGE_KEY,
        interval: float = AUTO_SAVE_INTERVAL_S,
        on_state_load: Callable[[StateDict], None] | None = None,
        on_state_error: Callable[[Exception], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.sink = sink
        self.key = key
        self.interval = float(interval)
        self.on_state_load = on_state_load
        self.on_state_error = on_state_error
        self._log = logger or logging.getLogger(__name__)
        self._last_saved: str | None = None
        self._auto_save_task: asyncio.Task | None = None

    def _report(self, event: str, error: Exception) -> None:
        self._log.error("%s key=%s error=%s", event, self.key, error)
        if self.on_state_error is not None:
            self.on_state_error(error)

    def save_state(self, state: MapState | StateDict) -> bool:
        try:
            serialized = _canonical(_as_dict(state))
            self.sink.set(self.key, json.dumps(_as_dict(state)))
        except (OSError, TypeError, ValueError) as e:
            self._report("state_save_error", e)
            return False
        self._last_saved = serialized
        self._log.debug("state_saved key=%s", self.key)
        return True

    def load_state(self) -> StateDict | None:
        try:
            raw = self.sink.get(self.key)
            if not raw:
                return None
            state = self._parse(raw)
        except (OSError, PersistenceError) as e:
            self._report("state_load_error", e)
            return None

        self._last_saved = _canonical(state)
        self._log.debug("state_loaded key=%s", self.key)
        if self.on_state_load is not None:
            self.on_state_load(state)
        return state

    def clear_state(self) -> None:
        try:
            self.sink.remove(self.key)
        except OSError as e:
            self._report("state_clear_error", e)
            return
        self._last_saved = None
        self._log.debug("state_cleared key=%s", self.key)

    def export_json(self, state: MapState | StateDict) -> str:
        return json.dumps(_as_dict(state), indent=2)

    def import_json(self, text: str) -> StateDict:
        try:
            state = self._parse(text)
        except PersistenceError as e:
            self._log.error("state_import_error error=%s", e)
            raise
        self._log.debug("state_imported")
        return state

    @staticmethod
    def _parse(text: str) -> StateDict:
        try:
            state = json.loads(text)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Invalid state JSON: {e}") from e
        if not isinstance(state, dict):
            raise PersistenceError("State document must be a JSON object")
        try:
            MapState.from_dict(state)
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise PersistenceError(f"Invalid state document: {e}") from e
        return state

    # -----------------------------------------------------------------------------
    # Auto-save
    # -----------------------------------------------------------------------------

    def auto_save_tick(self, get_state: Callable[[], MapState | StateDict]) -> bool:
        """
        Save the current state if it differs from the last saved one; True if written.
        """
        try:
            state = _as_dict(get_state())
            if _canonical(state) == self._last_saved:
                return False
        except Exception as e:
            # A failing snapshot must not stop the auto-save loop.
            self._report("state_save_error", e)
            return False
        return self.save_state(state)

    def start_auto_save(self, get_state: Callable[[], MapState | StateDict]) -> None:
        """
        Run `auto_save_tick` every `interval` seconds on the running event loop.
        """
        self.stop_auto_save()
        self._auto_save_task = asyncio.get_running_loop().create_task(
            self._auto_save_loop(get_state)
        )
        self._log.debug("auto_save_started interval=%s", self.interval)

    async def _auto_save_loop(self, get_state: Callable[[], MapState | StateDict]) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.auto_save_tick(get_state)

    def stop_auto_save(self) -> None:
        if self._auto_save_task is not None:
            self._auto_save_task.cancel()
            self._auto_save_task = None
            self._log.debug("auto_save_stopped")
