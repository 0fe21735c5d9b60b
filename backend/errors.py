from __future__ import annotations


class MapChatError(Exception):
    """
    Base class for every error raised by the map-chat backend.
    """


class LayerNotFoundError(MapChatError):
    def __init__(self, layer_id: str):
        super().__init__(f"Layer {layer_id} not found")
        self.layer_id = layer_id


class FeatureNotFoundError(MapChatError):
    def __init__(self, feature_id, layer_id: str | None = None):
        where = f" in layer {layer_id}" if layer_id else ""
        super().__init__(f"Feature {feature_id} not found{where}")
        self.feature_id = feature_id
        self.layer_id = layer_id


class ClusterError(MapChatError):
    """
    Clustering failures are surfaced to the caller: a half-built index must not be queried.
    """


class BatchError(MapChatError):
    pass


class ThrottleError(MapChatError):
    def __init__(self, message: str, errors: list[BaseException] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class OperationTimeoutError(MapChatError, TimeoutError):
    def __init__(self, timeout_s: float):
        super().__init__(f"Operation timed out after {timeout_s * 1000:.0f}ms")
        self.timeout_s = timeout_s


class PersistenceError(MapChatError):
    pass


class WorkerError(MapChatError):
    pass


class ImportFormatError(MapChatError, ValueError):
    pass
