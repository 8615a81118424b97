"""Best-candidate selection for a query point."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

from shapely.geometry import Point, shape

from geocadastre.common.constants import RANKING_METERS_PER_DEGREE
from geocadastre.common.models import GeoPoint, RawFeature

REFERENCE_POINT_FIELDS = ("referencePoint", "reference_point", "centroid", "position")


@dataclass(frozen=True)
class Selection:
    feature: RawFeature
    index: int
    reason: str
    contains_point: bool = False
    distance_meters: float | None = None


def _is_polygonal(feature: RawFeature) -> bool:
    geometry = feature.geometry or {}
    return "polygon" in str(geometry.get("type", "")).lower()


def _contains(feature: RawFeature, probe: Point) -> bool:
    try:
        return bool(shape(feature.geometry).covers(probe))
    except Exception:
        return False


def _point_coordinates(geometry: Any) -> tuple[float, float] | None:
    if not isinstance(geometry, dict) or geometry.get("type") != "Point":
        return None
    coords = geometry.get("coordinates")
    try:
        return float(coords[0]), float(coords[1])
    except (TypeError, ValueError, IndexError):
        return None


def reference_point(feature: RawFeature) -> tuple[float, float] | None:
    for name in REFERENCE_POINT_FIELDS:
        coords = _point_coordinates(feature.properties.get(name))
        if coords is not None:
            return coords
    return _point_coordinates(feature.geometry)


def scaled_degree_distance(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Planar distance in degrees scaled by a flat metres-per-degree factor."""
    return math.hypot(a[0] - b[0], a[1] - b[1]) * RANKING_METERS_PER_DEGREE


class FeatureSelector:
    """Picks one feature per query point.

    Priority: first polygon containing the point, then the first polygon, then
    the candidate whose reference point is nearest, then the first feature.
    Geometries must already be in the point's coordinate system.
    """

    def select(self, features: Sequence[RawFeature], point: GeoPoint) -> Selection | None:
        if not features:
            return None

        probe = Point(point.longitude, point.latitude)
        polygons = [(idx, feature) for idx, feature in enumerate(features) if _is_polygonal(feature)]
        for idx, feature in polygons:
            if _contains(feature, probe):
                return Selection(feature=feature, index=idx, reason="contains_point", contains_point=True)
        if polygons:
            idx, feature = polygons[0]
            return Selection(feature=feature, index=idx, reason="first_polygon")

        ranked = []
        for idx, feature in enumerate(features):
            ref = reference_point(feature)
            if ref is not None:
                ranked.append((scaled_degree_distance(ref, point.xy), idx, feature))
        if ranked:
            distance, idx, feature = min(ranked, key=lambda item: (item[0], item[1]))
            return Selection(feature=feature, index=idx, reason="nearest_reference", distance_meters=distance)

        return Selection(feature=features[0], index=0, reason="first_feature")

    def select_best(self, features: Sequence[RawFeature], point: GeoPoint) -> RawFeature | None:
        selection = self.select(features, point)
        return selection.feature if selection else None
