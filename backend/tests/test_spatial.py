from __future__ import annotations

import math

import pytest

from geo.edit import FeatureEditor
from geo.spatial import SpatialAnalyzer
from layers.types import Feature


def _point(lon: float, lat: float) -> Feature:
    return Feature(geometry={"type": "Point", "coordinates": [lon, lat]}, properties={"n": 1})


def _square(size: float = 0.01) -> Feature:
    ring = [[0, 0], [size, 0], [size, size], [0, size], [0, 0]]
    return Feature(geometry={"type": "Polygon", "coordinates": [ring]}, id="sq")


def _line() -> Feature:
    return Feature(
        geometry={"type": "LineString", "coordinates": [[0, 0], [1, 0], [2, 0], [3, 0]]},
        properties={"name": "l"},
        id="line",
    )


def test_distance_london_paris():
    km = SpatialAnalyzer().calculate_distance([_point(-0.1278, 51.5074), _point(2.3522, 48.8566)])
    assert 330 < km < 350


def test_distance_sums_consecutive_pairs_and_needs_two():
    a = SpatialAnalyzer()
    one_leg = a.calculate_distance([_point(0, 0), _point(1, 0)])
    two_legs = a.calculate_distance([_point(0, 0), _point(1, 0), _point(2, 0)])
    assert math.isclose(two_legs, 2 * one_leg, rel_tol=1e-6)
    assert a.calculate_distance([_point(0, 0)]) == 0.0
    assert a.calculate_distance([]) == 0.0


def test_distance_uses_mean_earth_radius():
    # One degree of meridian on a 6371.0088 km sphere, at any latitude.
    a = SpatialAnalyzer()
    equator = a.calculate_distance([_point(0, 0), _point(0, 1)])
    north = a.calculate_distance([_point(10, 60), _point(10, 61)])
    assert equator == pytest.approx(111.195, abs=0.01)
    assert north == pytest.approx(111.195, abs=0.01)


def test_distance_between_identical_points_is_zero():
    same = _point(-0.1246, 51.5007)
    assert SpatialAnalyzer().calculate_distance([same, _point(-0.1246, 51.5007)]) == 0.0


def test_area_of_small_square_near_equator():
    # ~1.11 km per 0.01 degree at the equator.
    km2 = SpatialAnalyzer().calculate_area([_square()])
    assert 1.1 < km2 < 1.3
    assert SpatialAnalyzer().calculate_area([]) == 0.0


def test_buffer_returns_polygon_around_point():
    buffered = SpatialAnalyzer().create_buffer(_point(10, 50), 1, "kilometers")
    assert buffered.geometry["type"] == "Polygon"
    assert buffered.properties == {"n": 1}
    min_lon, min_lat, max_lon, max_lat = SpatialAnalyzer().get_bounding_box([buffered])
    # 1 km is ~0.009 degrees of latitude.
    assert 0.017 < max_lat - min_lat < 0.019
    assert min_lon < 10 < max_lon


def test_buffer_failure_returns_original():
    broken = Feature(geometry={"type": "Point", "coordinates": []})
    assert SpatialAnalyzer().create_buffer(broken, 1, "meters") is broken
    p = _point(0, 0)
    assert SpatialAnalyzer().create_buffer(p, float("nan"), "miles") is p


def test_simplify_bbox_centroid():
    a = SpatialAnalyzer()
    wiggly = Feature(
        geometry={"type": "LineString", "coordinates": [[0, 0], [1, 0.0001], [2, 0]]}
    )
    simplified = a.simplify_geometry(wiggly, 0.01)
    assert simplified.geometry["coordinates"] == [[0.0, 0.0], [2.0, 0.0]]

    assert a.get_bounding_box([_point(1, 2), _point(-3, 4)]) == (-3.0, 2.0, 1.0, 4.0)
    assert a.get_bounding_box([]) is None

    centroid = a.get_centroid(_square(2))
    assert centroid.geometry == {"type": "Point", "coordinates": [1.0, 1.0]}


def test_measure_dispatch():
    a = SpatialAnalyzer()
    assert a.measure("distance", [_point(0, 0), _point(0, 1)]) > 100
    assert a.measure("area", [_square()]) > 1


def test_vertex_edits():
    e = FeatureEditor()
    line = _line()

    added = e.add_vertex(line, [1.5, 0.1])
    assert added.geometry["coordinates"][2] == [1.5, 0.1]
    assert line.geometry["coordinates"][2] == [2, 0]

    moved = e.move_vertex(line, 0, [0, 1])
    assert moved.geometry["coordinates"][0] == [0, 1]

    removed = e.remove_vertex(line, 1)
    assert len(removed.geometry["coordinates"]) == 3
    # Three vertices is the floor.
    assert e.remove_vertex(removed, 0) is removed
    assert e.move_vertex(line, 10, [0, 0]) is line


def test_split_and_merge():
    e = FeatureEditor()
    parts = e.split_feature(_line(), [1.5, 0.2])
    assert [p.geometry["coordinates"] for p in parts] == [
        [[0.0, 0.0], [1.0, 0.0], [1.5, 0.0]],
        [[1.5, 0.0], [2.0, 0.0], [3.0, 0.0]],
    ]
    assert all(p.properties == {"name": "l"} for p in parts)

    merged = e.merge_features(parts)
    assert merged.geometry["type"] == "LineString"
    assert len(merged.geometry["coordinates"]) == 6

    assert e.merge_features([]) is None
    only = _line()
    assert e.merge_features([only]) is only
    assert e.merge_features([only, _point(0, 0)]) is only
