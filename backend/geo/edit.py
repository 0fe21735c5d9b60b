from __future__ import annotations

import logging
import math
from typing import Sequence

from shapely.geometry import LineString, Point
from shapely.ops import substring

from geo.geometry import (
    Position,
    create_line_string,
    get_feature_coordinates,
    is_editable_feature,
    update_feature_geometry,
)
from layers.types import Feature


class FeatureEditor:
    """
    Vertex-level editing of LineString/Polygon features.

    Like the spatial analyzer, every edit returns the input unchanged (and logs) when it
    cannot be applied. Results are new Feature objects; inputs are never mutated.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or logging.getLogger(__name__)

    def add_vertex(self, feature: Feature, coordinates: Sequence[float]) -> Feature:
        """
        Insert a vertex after the segment closest to `coordinates`.
        """
        try:
            coords = get_feature_coordinates(feature)
            if len(coords) < 2:
                raise ValueError("Feature needs at least 2 vertices")
            p = Point(coordinates[0], coordinates[1])
            insert_at = 1
            best = math.inf
            for i in range(len(coords) - 1):
                d = LineString([coords[i][:2], coords[i + 1][:2]]).distance(p)
                if d < best:
                    best = d
                    insert_at = i + 1
            new_coords = [*coords[:insert_at], list(coordinates), *coords[insert_at:]]
            updated = update_feature_geometry(feature, new_coords)
        except (ValueError, TypeError, IndexError) as e:
            self._log.error("vertex_add_error %s", e)
            return feature

        self._log.debug(
            "map_command type=vertex_added featureId=%s coordinates=%s",
            feature.id,
            list(coordinates),
        )
        return updated

    def remove_vertex(self, feature: Feature, index: int) -> Feature:
        try:
            coords = get_feature_coordinates(feature)
            if len(coords) <= 3:
                raise ValueError(
                    "Cannot remove vertex from feature with less than 3 vertices"
                )
            if not -len(coords) <= index < len(coords):
                raise IndexError(f"Vertex index {index} out of range")
            new_coords = list(coords)
            del new_coords[index]
            updated = update_feature_geometry(feature, new_coords)
        except (ValueError, TypeError, IndexError) as e:
            self._log.error("vertex_remove_error %s", e)
            return feature

        self._log.debug(
            "map_command type=vertex_removed featureId=%s index=%d", feature.id, index
        )
        return updated

    def move_vertex(
        self, feature: Feature, index: int, coordinates: Sequence[float]
    ) -> Feature:
        try:
            coords = get_feature_coordinates(feature)
            if not -len(coords) <= index < len(coords):
                raise IndexError(f"Vertex index {index} out of range")
            new_coords = list(coords)
            new_coords[index] = list(coordinates)
            updated = update_feature_geometry(feature, new_coords)
        except (ValueError, TypeError, IndexError) as e:
            self._log.error("vertex_move_error %s", e)
            return feature

        self._log.debug(
            "map_command type=vertex_moved featureId=%s index=%d coordinates=%s",
            feature.id,
            index,
            list(coordinates),
        )
        return updated

    def split_feature(self, feature: Feature, split_point: Sequence[float]) -> list[Feature]:
        """
        Split the vertex line at the point on it nearest to `split_point`.

        Polygons are split along their outer ring and come back as LineStrings.
        """
        try:
            line = LineString([c[:2] for c in get_feature_coordinates(feature)])
            d = line.project(Point(split_point[0], split_point[1]))
            if d <= 0.0 or d >= line.length:
                parts = [line]
            else:
                parts = [substring(line, 0.0, d), substring(line, d, line.length)]
        except (ValueError, TypeError, IndexError) as e:
            self._log.error("feature_split_error %s", e)
            return [feature]

        out = [
            Feature(
                geometry=create_line_string([list(c) for c in part.coords]),
                properties=dict(feature.properties),
            )
            for part in parts
        ]
        self._log.debug(
            "map_command type=feature_split featureId=%s parts=%d", feature.id, len(out)
        )
        return out

    def merge_features(self, features: Sequence[Feature]) -> Feature | None:
        """
        Concatenate the vertex lists of editable features into one LineString.

        Returns the first input when the merge is not possible (None for empty input).
        """
        if not features:
            self._log.error("feature_merge_error Need at least 2 features to merge")
            return None
        try:
            if len(features) < 2:
                raise ValueError("Need at least 2 features to merge")
            if not all(is_editable_feature(f) for f in features):
                raise ValueError("All features must be LineString or Polygon")
            coords: list[Position] = []
            for f in features:
                coords.extend(get_feature_coordinates(f))
        except ValueError as e:
            self._log.error("feature_merge_error %s", e)
            return features[0]

        self._log.debug(
            "map_command type=features_merged featureIds=%s", [f.id for f in features]
        )
        return Feature(
            geometry=create_line_string(coords),
            properties=dict(features[0].properties),
        )
