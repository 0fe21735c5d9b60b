from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import lru_cache
from typing import Any, Sequence

from commands.parser import extract_map_commands
from engine.executor import MapService
from engine.in_memory import InMemoryMapSurface
from engine.types import CommandResult
from geo.spatial import SpatialAnalyzer
from history.tracker import HistoryOperation, HistoryTracker
from layers.io import FileFormat, export_features, import_features
from layers.store import LayerStore
from layers.types import Feature
from lod.cluster import ClusterService
from perf.batch import BatchProcessor
from perf.cache import CacheService, generate_key
from perf.throttle import ThrottleManager
from perf.worker import WorkerPool
from persistence.sink import FileSink, KeyValueSink
from persistence.state import MapPersistence
from settings.loader import get_settings, resolve_repo_path
from settings.types import AppSettings
from telemetry.monitor import PerformanceMonitor
from telemetry.singleton import get_store
from telemetry.store import TelemetryStore


FALLBACK_MESSAGE = (
    "Sorry, something went wrong processing your request. Please try again."
)

IMPORT_LAYER_ID = "imported"

_CLUSTERABLE_TYPES = frozenset({"Point", "LineString", "Polygon"})

# Store events that change features (cache + cluster index go stale).
_EDIT_EVENTS = frozenset(
    {
        "add_feature",
        "remove_feature",
        "modify_feature",
        "replace_properties",
        "style_feature",
        "set_feature_geometry",
        "remove_layer",
        "set_layer_visibility",
        "set_group_visibility",
        "load_state",
    }
)

AnalysisRequest = tuple[str, dict[str, Any]]


class MapSession:
    """
    One map conversation: the store plus every service that reads or mutates it.

    AI responses are applied through the throttle; spatial analysis requests go through
    the cache, then the batch processor, then the worker pool. Edits (and, if configured,
    zoom/pan) clear the cache and mark the cluster index stale.
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        sink: KeyValueSink | None = None,
        telemetry: TelemetryStore | None = None,
        worker_executor: Executor | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = s = settings or get_settings()
        self._log = logger or logging.getLogger(__name__)

        self.monitor = PerformanceMonitor(logger=logger)
        self.store = LayerStore(logger=logger)
        self.analyzer = SpatialAnalyzer(logger=logger)
        self.history = HistoryTracker(
            max_history_size=s.history.max_history_size, logger=logger
        )
        self.surface = InMemoryMapSurface(
            self.store, analyzer=self.analyzer, history=self.history, logger=logger
        )
        self.service = MapService(
            self.surface, logger=logger, telemetry=telemetry, monitor=self.monitor
        )

        self.cache = CacheService(
            default_ttl=s.cache.default_ttl,
            max_size=s.cache.max_size,
            cleanup_interval=s.cache.cleanup_interval,
            logger=logger,
        )
        self.throttle = ThrottleManager(
            max_concurrent=s.throttle.max_concurrent,
            max_per_second=s.throttle.max_per_second,
            max_burst_size=s.throttle.max_burst_size,
            cooldown_period=s.throttle.cooldown_period,
            monitor=self.monitor,
            logger=logger,
        )
        self.batch: BatchProcessor[AnalysisRequest, Any] = BatchProcessor(
            self._run_analysis_batch,
            max_size=s.batch.max_size,
            max_delay=s.batch.max_delay,
            retry_attempts=s.batch.retry_attempts,
            retry_delay=s.batch.retry_delay,
            monitor=self.monitor,
            logger=logger,
        )
        self.clusters = ClusterService(**s.cluster.model_dump(), logger=logger)
        self.persistence = (
            MapPersistence(
                sink,
                key=s.persistence.key,
                interval=s.persistence.auto_save_interval,
                logger=logger,
            )
            if sink is not None
            else None
        )

        self._worker_executor = worker_executor
        self._worker_pool: WorkerPool | None = None
        self._clusters_stale = True
        self._view = (self.store.get_state().center, self.store.get_state().zoom)
        self.store.add_listener(self._on_store_event)

    # -----------------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------------

    def start(self) -> None:
        """
        Restore the persisted state and start background tasks (needs a running loop).
        """
        if self.persistence is not None:
            saved = self.persistence.load_state()
            if saved is not None:
                self.restore(saved)
            self.persistence.start_auto_save(self.snapshot)
        self.cache.start()
        self._log.info("map_session_started layers=%d", len(list(self.store.iter_layers())))

    def close(self) -> None:
        if self.persistence is not None:
            self.persistence.stop_auto_save()
            self.persistence.save_state(self.snapshot())
        self.cache.dispose()
        self.throttle.dispose()
        self.batch.dispose()
        if self._worker_pool is not None:
            self._worker_pool.terminate()
            self._worker_pool = None
        self._log.info("map_session_closed")

    # -----------------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        state = self.store.snapshot()
        state["history"] = self.history.to_dict()
        return state

    def restore(self, state: dict[str, Any]) -> None:
        self.store.load_state(state)
        self.history.load(state.get("history"))

    def _on_store_event(self, event: str, payload: dict[str, Any]) -> None:
        rules = self.settings.cache.invalidation
        if event in _EDIT_EVENTS:
            self._clusters_stale = True
            if rules.on_edit:
                self.cache.clear()
            else:
                self.cache.clear(r"^clusters\(")
            return
        if event != "zoom_to":
            return

        center, zoom = self._view
        state = self.store.get_state()
        self._view = (state.center, state.zoom)
        if (rules.on_zoom and state.zoom != zoom) or (rules.on_pan and state.center != center):
            self.cache.clear()

    # -----------------------------------------------------------------------------
    # AI responses + commands
    # -----------------------------------------------------------------------------

    async def handle_ai_response(self, text: str) -> str:
        """
        Apply the directives in an AI response. Returns the text unchanged, or a generic
        apology if the pipeline itself failed (individual bad commands are not failures).
        """

        async def run() -> str:
            return self.service.execute_map_commands(text)

        try:
            return await self.throttle.execute_operation(
                run, timeout=self.settings.throttle.timeout
            )
        except Exception as e:
            self._log.error("ai_response_error error=%s", e)
            return FALLBACK_MESSAGE

    async def apply_commands(self, text: str) -> list[CommandResult]:
        commands = extract_map_commands(text, logger=self._log)

        async def run() -> list[CommandResult]:
            return self.service.execute_commands(commands)

        return await self.throttle.execute_operation(
            run, timeout=self.settings.throttle.timeout
        )

    def undo(self) -> HistoryOperation | None:
        return self.history.undo()

    def redo(self) -> HistoryOperation | None:
        return self.history.redo()

    # -----------------------------------------------------------------------------
    # Import / export
    # -----------------------------------------------------------------------------

    def export(self, fmt: FileFormat) -> str:
        return export_features(self.store.all_features(), fmt)

    def import_text(
        self, text: str, fmt: FileFormat, *, layer_id: str = IMPORT_LAYER_ID
    ) -> list[Feature]:
        return [
            self.surface.add_feature(f, layer_id) for f in import_features(text, fmt)
        ]

    # -----------------------------------------------------------------------------
    # Clustering
    # -----------------------------------------------------------------------------

    def _refresh_clusters(self) -> None:
        if not self._clusters_stale:
            return
        features = [
            f
            for f in self.store.all_features(visible_only=True)
            if f.geometry_type in _CLUSTERABLE_TYPES
        ]
        self.clusters.load_features(features)
        self._clusters_stale = False

    def get_clusters(self, bbox: Sequence[float], zoom: float) -> list[dict[str, Any]]:
        """
        Clusters for the visible features as GeoJSON dicts, cached per (bbox, zoom).
        """
        key = generate_key("clusters", {"bbox": list(bbox), "zoom": zoom})
        hit = self.cache.get(key)
        if hit is not None:
            return hit

        self._refresh_clusters()
        items = [item.to_geojson() for item in self.clusters.get_clusters(bbox, zoom)]
        self.cache.set(key, items)
        return items

    def get_cluster_expansion_zoom(self, cluster_id: int) -> int:
        self._refresh_clusters()
        return self.clusters.get_cluster_expansion_zoom(cluster_id)

    def get_cluster_leaves(
        self, cluster_id: int, limit: int = 10, offset: int = 0
    ) -> list[Feature]:
        self._refresh_clusters()
        return self.clusters.get_cluster_leaves(cluster_id, limit, offset)

    # -----------------------------------------------------------------------------
    # Spatial analysis (cache -> batch -> worker pool)
    # -----------------------------------------------------------------------------

    def _workers(self) -> WorkerPool:
        if self._worker_pool is None:
            self._worker_pool = WorkerPool(
                self.settings.worker.pool_size,
                executor=self._worker_executor,
                monitor=self.monitor,
                logger=self._log,
            )
        return self._worker_pool

    async def _run_analysis_batch(self, items: list[AnalysisRequest]) -> list[Any]:
        pool = self._workers()
        timeout = self.settings.worker.timeout
        return await asyncio.gather(
            *(pool.execute_with_timeout(t, data, timeout) for t, data in items),
            return_exceptions=True,
        )

    async def analyze(self, task_type: str, data: dict[str, Any]) -> Any:
        key = generate_key(f"analysis.{task_type}", data)
        hit = self.cache.get(key)
        if hit is not None:
            return hit

        result = await self.batch.submit((task_type, data))
        if isinstance(result, BaseException):
            raise result
        if result is not None:
            self.cache.set(key, result)
        return result

    def metrics(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "cache": self.cache.get_stats().to_dict(),
            "throttle": self.throttle.get_metrics().to_dict(),
            "batch": self.batch.get_metrics().to_dict(),
            "operations": {
                name: report.to_dict()
                for name, report in self.monitor.get_all_reports().items()
            },
        }
        if self._worker_pool is not None:
            out["worker"] = self._worker_pool.get_metrics().to_dict()
        return out


@lru_cache(maxsize=1)
def get_session() -> MapSession:
    """
    Process-wide session for the HTTP app, built from settings.
    """
    s = get_settings()
    sink = (
        FileSink(resolve_repo_path(s.persistence.state_dir))
        if s.persistence.enabled
        else None
    )
    return MapSession(s, sink=sink, telemetry=get_store())


def reset_session() -> None:
    if get_session.cache_info().currsize:
        get_session().close()
    get_session.cache_clear()
