from __future__ import annotations

import pytest

from errors import ClusterError
from layers.types import Feature
from lod.cluster import Cluster, ClusterService, abbreviate_count, is_cluster


WORLD = (-180.0, -90.0, 180.0, 90.0)


def _point(fid: str, lon: float, lat: float) -> Feature:
    return Feature(geometry={"type": "Point", "coordinates": [lon, lat]}, id=fid)


def _loaded() -> ClusterService:
    # Three points ~1.1 km apart near (0, 0) and one far away.
    service = ClusterService()
    service.load_features(
        [
            _point("a", 0.0, 0.0),
            _point("b", 0.01, 0.0),
            _point("c", 0.0, 0.01),
            _point("far", 100.0, 40.0),
        ]
    )
    return service


def _only_cluster(items) -> Cluster:
    clusters = [i for i in items if is_cluster(i)]
    assert len(clusters) == 1
    return clusters[0]


def test_nearby_points_cluster_at_low_zoom_and_split_at_high_zoom():
    service = _loaded()

    low = service.get_clusters(WORLD, 0)
    cluster = _only_cluster(low)
    assert cluster.point_count == 3
    assert [i.id for i in low if not is_cluster(i)] == ["far"]

    high = service.get_clusters(WORLD, 16)
    assert not any(is_cluster(i) for i in high)
    assert sorted(i.id for i in high) == ["a", "b", "c", "far"]


def test_cluster_geojson_properties():
    cluster = _only_cluster(_loaded().get_clusters(WORLD, 3))
    gj = cluster.to_geojson()
    assert gj["geometry"]["type"] == "Point"
    assert gj["properties"]["cluster"] is True
    assert gj["properties"]["cluster_id"] == cluster.id
    assert gj["properties"]["point_count_abbreviated"] == "3"
    lon, lat = gj["geometry"]["coordinates"]
    assert 0 <= lon < 0.01 and 0 <= lat < 0.01


def test_bbox_limits_results_and_handles_antimeridian():
    service = ClusterService()
    service.load_features([_point("east", 175.0, 0.0), _point("west", -175.0, 0.0)])

    assert [i.id for i in service.get_clusters((170, -10, 180, 10), 16)] == ["east"]
    across = service.get_clusters((170, -10, -170, 10), 16)
    assert sorted(i.id for i in across) == ["east", "west"]


def test_leaves_children_and_expansion_zoom():
    service = _loaded()
    cluster = _only_cluster(service.get_clusters(WORLD, 0))

    assert sorted(f.id for f in service.get_cluster_leaves(cluster.id, limit=10)) == [
        "a",
        "b",
        "c",
    ]
    first = service.get_cluster_leaves(cluster.id, limit=2)
    rest = service.get_cluster_leaves(cluster.id, limit=2, offset=2)
    assert len(first) == 2 and len(rest) == 1
    assert {f.id for f in first} | {f.id for f in rest} == {"a", "b", "c"}

    assert len(service.get_cluster_children(cluster.id)) == 1
    # ~1.1 km spacing stops clustering between zoom 11 and 12.
    assert service.get_cluster_expansion_zoom(cluster.id) == 12


def test_bounds_and_stats():
    service = _loaded()
    cluster = _only_cluster(service.get_clusters(WORLD, 0))
    assert service.get_cluster_bounds(cluster.id) == (0.0, 0.0, 0.01, 0.01)

    stats = service.get_cluster_stats()
    assert stats.total_features == 4
    assert stats.total_clusters == 1
    assert stats.to_dict()["averagePointsPerCluster"] == 4.0


def test_lines_and_polygons_cluster_by_their_mean_coordinate():
    service = ClusterService()
    service.load_features(
        [
            Feature(
                geometry={"type": "LineString", "coordinates": [[10, 10], [10.002, 10]]},
                id="line",
            ),
            Feature(
                geometry={
                    "type": "Polygon",
                    "coordinates": [[[10, 10], [10.001, 10], [10.001, 10.001], [10, 10]]],
                },
                id="poly",
            ),
        ]
    )
    assert _only_cluster(service.get_clusters(WORLD, 5)).point_count == 2


def test_unknown_cluster_id_raises():
    service = _loaded()
    with pytest.raises(ClusterError):
        service.get_cluster_leaves(999_999)
    with pytest.raises(ClusterError):
        service.get_cluster_expansion_zoom(999_999)


def test_failed_load_drops_the_index():
    service = _loaded()
    bad = Feature(geometry={"type": "MultiPoint", "coordinates": [[0, 0], [1, 1]]}, id="m")

    with pytest.raises(ClusterError, match="Failed to load features"):
        service.load_features([_point("ok", 1, 1), bad])

    assert not service.loaded
    assert service.feature_count == 0
    with pytest.raises(ClusterError, match="not loaded"):
        service.get_clusters(WORLD, 0)


def test_empty_load_yields_no_clusters():
    service = ClusterService()
    service.load_features([])
    assert service.loaded
    assert service.get_clusters(WORLD, 4) == []


def test_abbreviate_count():
    assert abbreviate_count(999) == "999"
    assert abbreviate_count(1500) == "1.5k"
    assert abbreviate_count(12_345) == "12k"
