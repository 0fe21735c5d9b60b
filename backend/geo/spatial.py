from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Any, Literal, Sequence

from pyproj import CRS, Geod, Transformer
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shapely_transform

from layers.types import Feature


BufferUnits = Literal["kilometers", "miles", "meters"]
MeasureType = Literal["distance", "area"]

UNIT_TO_METERS: dict[str, float] = {
    "kilometers": 1000.0,
    "miles": 1609.344,
    "meters": 1.0,
}

_GEOD = Geod(ellps="WGS84")
# Mean earth radius; distances are great-circle, areas stay on the ellipsoid.
_SPHERE = Geod(a=6371008.8, f=0)


def feature_geometry(feature: Feature) -> BaseGeometry:
    geom = shape(feature.geometry)
    if geom.is_empty:
        raise ValueError("Feature geometry is empty")
    return geom


def feature_center(feature: Feature) -> tuple[float, float]:
    """
    Center of the feature's bounding box as (lon, lat).
    """
    min_x, min_y, max_x, max_y = feature_geometry(feature).bounds
    return (min_x + max_x) / 2.0, (min_y + max_y) / 2.0


def great_circle_km(a: tuple[float, float], b: tuple[float, float]) -> float:
    # Inputs are (lon, lat).
    _, _, dist_m = _SPHERE.inv(a[0], a[1], b[0], b[1])
    return float(dist_m) / 1000.0


def geometry_to_dict(geom: BaseGeometry) -> dict[str, Any]:
    return _listify(mapping(geom))


def _listify(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _listify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_listify(v) for v in value]
    return value


@lru_cache(maxsize=256)
def _aeqd_transformers(lon: float, lat: float) -> tuple[Transformer, Transformer]:
    """
    Forward/inverse transformers for an azimuthal equidistant projection centered on
    (lon, lat). Distances from the center are true meters, which is what a buffer needs.
    """
    crs = CRS.from_proj4(
        f"+proj=aeqd +lat_0={lat} +lon_0={lon} +datum=WGS84 +units=m +no_defs"
    )
    fwd = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
    inv = Transformer.from_crs(crs, "EPSG:4326", always_xy=True)
    return fwd, inv


class SpatialAnalyzer:
    """
    Measurements and geometry derivations over GeoJSON-style features.

    Every operation returns a safe default (0, None, or the original feature) instead of
    raising. These calls run inside the AI command pipeline, where one bad directive
    must not abort the rest of the response. Clustering (`lod.cluster`) is the opposite:
    it raises `ClusterError`.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or logging.getLogger(__name__)

    def calculate_distance(self, features: Sequence[Feature]) -> float:
        """
        Sum of great-circle distances (km) between consecutive features' centers.
        """
        if len(features) < 2:
            self._log.error("spatial_error Need at least 2 features to calculate distance")
            return 0.0

        try:
            total = 0.0
            for a, b in zip(features, features[1:]):
                total += great_circle_km(feature_center(a), feature_center(b))
        except Exception as e:
            self._log.error("spatial_error Error calculating distance: %s", e)
            return 0.0

        self._log.debug("measure_distance distance=%s", total)
        return total

    def calculate_area(self, features: Sequence[Feature]) -> float:
        """
        Sum of geodesic areas in square kilometers.
        """
        if not features:
            self._log.error("spatial_error No features provided for area calculation")
            return 0.0

        try:
            total_m2 = 0.0
            for f in features:
                area, _perimeter = _GEOD.geometry_area_perimeter(feature_geometry(f))
                total_m2 += abs(float(area))
        except Exception as e:
            self._log.error("spatial_error Error calculating area: %s", e)
            return 0.0

        area_km2 = total_m2 / 1_000_000.0
        self._log.debug("measure_area area=%s", area_km2)
        return area_km2

    def measure(self, measure_type: MeasureType, features: Sequence[Feature]) -> float:
        if measure_type == "distance":
            return self.calculate_distance(features)
        if measure_type == "area":
            return self.calculate_area(features)
        self._log.error("spatial_error Unknown measurement type %r", measure_type)
        return 0.0

    def create_buffer(
        self, feature: Feature, distance: float, units: BufferUnits = "kilometers"
    ) -> Feature:
        """
        Polygon expanded by `distance` around the feature; the original on failure.
        """
        try:
            meters = float(distance) * UNIT_TO_METERS[units]
            if not math.isfinite(meters):
                raise ValueError(f"Invalid buffer distance: {distance!r}")

            geom = feature_geometry(feature)
            c = geom.centroid
            fwd, inv = _aeqd_transformers(round(c.x, 6), round(c.y, 6))
            buffered = shapely_transform(fwd.transform, geom).buffer(meters)
            if buffered.is_empty:
                raise ValueError("Buffer operation returned an empty geometry")
            back = shapely_transform(inv.transform, buffered)
        except Exception as e:
            self._log.error("spatial_error Error creating buffer: %s", e)
            return feature

        self._log.debug(
            "create_buffer feature=%s distance=%s units=%s", feature.id, distance, units
        )
        return Feature(
            geometry=geometry_to_dict(back),
            properties=dict(feature.properties),
        )

    def simplify_geometry(self, feature: Feature, tolerance: float) -> Feature:
        """
        Douglas-Peucker simplification; `tolerance` is in degrees.
        """
        try:
            simplified = feature_geometry(feature).simplify(
                float(tolerance), preserve_topology=True
            )
            if simplified.is_empty:
                raise ValueError("Simplification returned an empty geometry")
        except Exception as e:
            self._log.error("spatial_error Error simplifying geometry: %s", e)
            return feature

        self._log.debug("simplify_geometry feature=%s tolerance=%s", feature.id, tolerance)
        out = feature.copy()
        out.geometry = geometry_to_dict(simplified)
        return out

    def get_bounding_box(
        self, features: Sequence[Feature]
    ) -> tuple[float, float, float, float] | None:
        if not features:
            self._log.error(
                "spatial_error No features provided for bounding box calculation"
            )
            return None

        try:
            bounds = [feature_geometry(f).bounds for f in features]
            bbox = (
                min(b[0] for b in bounds),
                min(b[1] for b in bounds),
                max(b[2] for b in bounds),
                max(b[3] for b in bounds),
            )
            if not all(math.isfinite(v) for v in bbox):
                raise ValueError(f"Non-finite bounds: {bbox}")
        except Exception as e:
            self._log.error("spatial_error Error calculating bounding box: %s", e)
            return None

        self._log.debug("get_bounds bounds=%s", bbox)
        return bbox

    def get_centroid(self, feature: Feature) -> Feature:
        try:
            centroid = feature_geometry(feature).centroid
            if centroid.is_empty:
                raise ValueError("Centroid is empty")
        except Exception as e:
            self._log.error("spatial_error Error calculating centroid: %s", e)
            return feature

        self._log.debug("get_centroid feature=%s", feature.id)
        return Feature(
            geometry={"type": "Point", "coordinates": [centroid.x, centroid.y]},
            properties=dict(feature.properties),
        )
