from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Iterable, Sequence, Union

from pyproj import Transformer
from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from errors import ClusterError
from geo.geometry import iter_positions, representative_coordinates
from layers.types import Feature


# Half the Web Mercator world width in meters (EPSG:3857).
_HALF_WORLD_M = 20037508.342789244
_MAX_LAT = 85.0511287798066


@lru_cache(maxsize=1)
def _to_3857() -> Transformer:
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


@lru_cache(maxsize=1)
def _to_4326() -> Transformer:
    return Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


def project(lons: Sequence[float], lats: Sequence[float]) -> tuple[list[float], list[float]]:
    """
    lon/lat degrees -> normalized Web Mercator (x, y in [0, 1], y grows southwards).
    """
    clamped = [max(-_MAX_LAT, min(_MAX_LAT, lat)) for lat in lats]
    xs, ys = _to_3857().transform(list(lons), clamped)
    world = 2 * _HALF_WORLD_M
    return (
        [x / world + 0.5 for x in xs],
        [min(1.0, max(0.0, 0.5 - y / world)) for y in ys],
    )


def unproject(x: float, y: float) -> tuple[float, float]:
    world = 2 * _HALF_WORLD_M
    lon, lat = _to_4326().transform((x - 0.5) * world, (0.5 - y) * world)
    return float(lon), float(lat)


def abbreviate_count(count: int) -> str:
    if count >= 10000:
        return f"{math.floor(count / 1000 + 0.5)}k"
    if count >= 1000:
        return f"{math.floor(count / 100 + 0.5) / 10}k"
    return str(count)


@dataclass(frozen=True)
class Cluster:
    id: int
    point_count: int
    lon: float
    lat: float

    @property
    def properties(self) -> dict[str, Any]:
        return {
            "cluster": True,
            "cluster_id": self.id,
            "point_count": self.point_count,
            "point_count_abbreviated": abbreviate_count(self.point_count),
        }

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "id": self.id,
            "properties": self.properties,
            "geometry": {"type": "Point", "coordinates": [self.lon, self.lat]},
        }


ClusterItem = Union[Cluster, Feature]


def is_cluster(item: Any) -> bool:
    return isinstance(item, Cluster)


@dataclass(frozen=True)
class ClusterStats:
    total_features: int
    total_clusters: int
    average_points_per_cluster: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalFeatures": self.total_features,
            "totalClusters": self.total_clusters,
            "averagePointsPerCluster": self.average_points_per_cluster,
        }


@dataclass
class _Node:
    x: float
    y: float
    # Source feature index for leaves, cluster id for clusters.
    ref: int
    num_points: int = 1
    zoom: float = math.inf
    parent_id: int = -1

    @property
    def is_cluster(self) -> bool:
        return self.num_points > 1


@dataclass
class _Level:
    nodes: list[_Node]
    tree: STRtree | None

    @classmethod
    def build(cls, nodes: list[_Node]) -> "_Level":
        tree = STRtree([Point(n.x, n.y) for n in nodes]) if nodes else None
        return cls(nodes=nodes, tree=tree)

    def within(self, x: float, y: float, r: float) -> list[int]:
        if self.tree is None:
            return []
        hits = self.tree.query(Point(x, y), predicate="dwithin", distance=r)
        return sorted(int(i) for i in hits)

    def range(self, min_x: float, min_y: float, max_x: float, max_y: float) -> list[int]:
        if self.tree is None:
            return []
        hits = self.tree.query(shapely_box(min_x, min_y, max_x, max_y))
        return sorted(int(i) for i in hits)


class ClusterService:
    """
    Zoom-hierarchical point clustering.

    Every feature is reduced to the mean of its coordinates, projected to normalized Web
    Mercator, and clustered greedily from `max_zoom` down to `min_zoom`: at each zoom a point
    absorbs every unclaimed neighbour within `radius / (extent * 2**zoom)`. One STRtree is
    kept per zoom level.

    Unlike the spatial analyzer, failures raise ClusterError: after a failed load the index
    is dropped and every query raises until the next successful `load_features`.
    """

    def __init__(
        self,
        *,
        radius: float = 40,
        max_zoom: int = 16,
        min_zoom: int = 0,
        min_points: int = 2,
        extent: int = 512,
        logger: logging.Logger | None = None,
    ):
        if min_zoom > max_zoom:
            raise ValueError("min_zoom must be <= max_zoom")
        self.radius = float(radius)
        self.max_zoom = int(max_zoom)
        self.min_zoom = int(min_zoom)
        self.min_points = int(min_points)
        self.extent = int(extent)
        self._log = logger or logging.getLogger(__name__)

        self._features: list[Feature] = []
        self._levels: dict[int, _Level] = {}

    @property
    def loaded(self) -> bool:
        return bool(self._levels)

    @property
    def feature_count(self) -> int:
        return len(self._features)

    # -----------------------------------------------------------------------------
    # Index build
    # -----------------------------------------------------------------------------

    def load_features(self, features: Iterable[Feature]) -> None:
        features = list(features)
        self._features = []
        self._levels = {}
        try:
            lons: list[float] = []
            lats: list[float] = []
            for f in features:
                lon, lat = self._feature_point(f)
                lons.append(lon)
                lats.append(lat)

            xs, ys = project(lons, lats) if features else ([], [])
            nodes = [_Node(x=x, y=y, ref=i) for i, (x, y) in enumerate(zip(xs, ys))]

            levels = {self.max_zoom + 1: _Level.build(nodes)}
            for z in range(self.max_zoom, self.min_zoom - 1, -1):
                levels[z] = _Level.build(self._cluster(levels[z + 1], z, len(features)))
        except Exception as e:
            self._log.error("feature_load_error error=%s", e)
            raise ClusterError("Failed to load features for clustering") from e

        self._features = features
        self._levels = levels
        self._log.debug("features_loaded count=%d", len(features))

    def _feature_point(self, feature: Feature) -> tuple[float, float]:
        if feature.geometry_type not in ("Point", "LineString", "Polygon"):
            raise ClusterError(
                f"Feature {feature.id} must be a Point, LineString or Polygon"
            )
        coords = representative_coordinates(feature)
        if not coords:
            raise ClusterError(f"Feature {feature.id} has no coordinates")
        lon = sum(c[0] for c in coords) / len(coords)
        lat = sum(c[1] for c in coords) / len(coords)
        if not (math.isfinite(lon) and math.isfinite(lat)):
            raise ClusterError(f"Feature {feature.id} has non-finite coordinates")
        return lon, lat

    def _radius_at(self, zoom: int) -> float:
        return self.radius / (self.extent * 2**zoom)

    def _cluster(self, level: _Level, zoom: int, n_points: int) -> list[_Node]:
        r = self._radius_at(zoom)
        nodes = level.nodes
        out: list[_Node] = []

        for i, p in enumerate(nodes):
            if p.zoom <= zoom:
                continue
            p.zoom = zoom

            neighbours = [nodes[j] for j in level.within(p.x, p.y, r) if j != i]
            num_points = p.num_points + sum(
                b.num_points for b in neighbours if b.zoom > zoom
            )

            if num_points > p.num_points and num_points >= self.min_points:
                cluster_id = (i << 5) + (zoom + 1) + n_points
                wx = p.x * p.num_points
                wy = p.y * p.num_points
                for b in neighbours:
                    if b.zoom <= zoom:
                        continue
                    b.zoom = zoom
                    b.parent_id = cluster_id
                    wx += b.x * b.num_points
                    wy += b.y * b.num_points
                p.parent_id = cluster_id
                out.append(
                    _Node(
                        x=wx / num_points,
                        y=wy / num_points,
                        ref=cluster_id,
                        num_points=num_points,
                    )
                )
            else:
                out.append(replace(p))
                if num_points > 1:
                    # Not enough for a cluster: neighbours pass through unclustered.
                    for b in neighbours:
                        if b.zoom <= zoom:
                            continue
                        b.zoom = zoom
                        out.append(replace(b))
        return out

    # -----------------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self._levels:
            raise ClusterError("Cluster index is not loaded")

    def _limit_zoom(self, zoom: float) -> int:
        return max(self.min_zoom, min(math.floor(zoom), self.max_zoom + 1))

    def _to_item(self, node: _Node) -> ClusterItem:
        if node.is_cluster:
            lon, lat = unproject(node.x, node.y)
            return Cluster(id=node.ref, point_count=node.num_points, lon=lon, lat=lat)
        return self._features[node.ref]

    def get_clusters(
        self, bbox: Sequence[float], zoom: float
    ) -> list[ClusterItem]:
        """
        Clusters and unclustered features inside `bbox` (min_lon, min_lat, max_lon, max_lat)
        at `zoom`. A bbox crossing the antimeridian (min_lon > max_lon) is queried as two
        halves.
        """
        try:
            self._require_loaded()
            items = self._clusters_in(bbox, zoom)
        except ClusterError as e:
            self._log.error("cluster_generation_error error=%s", e)
            raise
        except Exception as e:
            self._log.error("cluster_generation_error error=%s", e)
            raise ClusterError("Failed to generate clusters") from e
        self._log.debug("clusters_generated count=%d zoom=%s", len(items), zoom)
        return items

    def _clusters_in(self, bbox: Sequence[float], zoom: float) -> list[ClusterItem]:
        west, south, east, north = (float(v) for v in bbox)
        min_lng = ((west + 180) % 360 + 360) % 360 - 180
        min_lat = max(-90.0, min(90.0, south))
        max_lng = 180.0 if east == 180 else ((east + 180) % 360 + 360) % 360 - 180
        max_lat = max(-90.0, min(90.0, north))

        if east - west >= 360:
            min_lng, max_lng = -180.0, 180.0
        elif min_lng > max_lng:
            return self._clusters_in(
                (min_lng, min_lat, 180.0, max_lat), zoom
            ) + self._clusters_in((-180.0, min_lat, max_lng, max_lat), zoom)

        level = self._levels[self._limit_zoom(zoom)]
        (x0, x1), (y_top, y_bottom) = project([min_lng, max_lng], [max_lat, min_lat])
        return [
            self._to_item(level.nodes[i]) for i in level.range(x0, y_top, x1, y_bottom)
        ]

    def _origin(self, cluster_id: int) -> tuple[int, int]:
        n = len(self._features)
        return (cluster_id - n) >> 5, (cluster_id - n) % 32

    def _children(self, cluster_id: int) -> list[ClusterItem]:
        self._require_loaded()
        origin_index, origin_zoom = self._origin(cluster_id)
        level = self._levels.get(origin_zoom)
        if level is None or not 0 <= origin_index < len(level.nodes):
            raise ClusterError(f"No cluster with id {cluster_id}")

        origin = level.nodes[origin_index]
        r = self._radius_at(origin_zoom - 1)
        children = [
            self._to_item(level.nodes[i])
            for i in level.within(origin.x, origin.y, r)
            if level.nodes[i].parent_id == cluster_id
        ]
        if not children:
            raise ClusterError(f"No cluster with id {cluster_id}")
        return children

    def get_cluster_children(self, cluster_id: int) -> list[ClusterItem]:
        try:
            children = self._children(cluster_id)
        except ClusterError as e:
            self._log.error("cluster_children_error cluster_id=%s error=%s", cluster_id, e)
            raise
        self._log.debug(
            "cluster_children cluster_id=%s count=%d", cluster_id, len(children)
        )
        return children

    def get_cluster_expansion_zoom(self, cluster_id: int) -> int:
        """
        Lowest zoom at which the cluster breaks into more than one item.
        """
        try:
            expansion_zoom = self._origin(cluster_id)[1] - 1
            current = cluster_id
            while True:
                children = self._children(current)
                expansion_zoom += 1
                if (
                    expansion_zoom > self.max_zoom
                    or len(children) != 1
                    or not isinstance(children[0], Cluster)
                ):
                    break
                current = children[0].id
        except ClusterError as e:
            self._log.error("cluster_expansion_error cluster_id=%s error=%s", cluster_id, e)
            raise
        self._log.debug(
            "cluster_expansion cluster_id=%s zoom=%d", cluster_id, expansion_zoom
        )
        return expansion_zoom

    def get_cluster_leaves(
        self, cluster_id: int, limit: float = 10, offset: int = 0
    ) -> list[Feature]:
        """
        Original features under a cluster, paginated by `limit`/`offset` (use math.inf for all).
        """
        leaves: list[Feature] = []
        try:
            self._append_leaves(leaves, cluster_id, limit, offset, 0)
        except ClusterError as e:
            self._log.error("cluster_leaves_error cluster_id=%s error=%s", cluster_id, e)
            raise
        self._log.debug("cluster_leaves cluster_id=%s count=%d", cluster_id, len(leaves))
        return leaves

    def _append_leaves(
        self,
        out: list[Feature],
        cluster_id: int,
        limit: float,
        offset: int,
        skipped: int,
    ) -> int:
        for child in self._children(cluster_id):
            if isinstance(child, Cluster):
                if skipped + child.point_count <= offset:
                    skipped += child.point_count
                else:
                    skipped = self._append_leaves(out, child.id, limit, offset, skipped)
            elif skipped < offset:
                skipped += 1
            else:
                out.append(child)
            if len(out) >= limit:
                break
        return skipped

    def get_cluster_bounds(self, cluster_id: int) -> tuple[float, float, float, float]:
        leaves = self.get_cluster_leaves(cluster_id, math.inf)
        try:
            points = [p for leaf in leaves for p in iter_positions(leaf.geometry)]
        except ValueError as e:
            self._log.error("cluster_bounds_error cluster_id=%s error=%s", cluster_id, e)
            raise ClusterError("Failed to get cluster bounds") from e
        if not points:
            raise ClusterError(f"Cluster {cluster_id} has no coordinates")

        bounds = (
            min(p[0] for p in points),
            min(p[1] for p in points),
            max(p[0] for p in points),
            max(p[1] for p in points),
        )
        self._log.debug("cluster_bounds cluster_id=%s bounds=%s", cluster_id, bounds)
        return bounds

    def get_cluster_stats(self) -> ClusterStats:
        clusters = self.get_clusters((-180.0, -90.0, 180.0, 90.0), 0)
        count = sum(1 for c in clusters if isinstance(c, Cluster))
        stats = ClusterStats(
            total_features=len(self._features),
            total_clusters=count,
            average_points_per_cluster=len(self._features) / (count or 1),
        )
        self._log.debug("cluster_stats stats=%s", stats.to_dict())
        return stats
