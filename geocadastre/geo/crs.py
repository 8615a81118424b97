"""Coordinate reprojection, UTM zone selection, and bounding-box math."""

from __future__ import annotations

import math
import threading
from typing import Any, Iterable, Sequence

from pyproj import CRS, Transformer

from geocadastre.common.constants import METERS_PER_DEGREE, WGS84
from geocadastre.common.errors import InvalidCoordinateError
from geocadastre.common.models import BBox, GeoPoint
from geocadastre.common.srs import GEOGRAPHIC_CODES, is_geographic, normalize_crs_code

UTM_TOKEN = "UTM"


def is_lat_first_srs_name(value: str | None) -> bool:
    """URN and URI spellings of geographic systems use latitude/longitude order."""
    if not value:
        return False
    text = value.strip().lower()
    if not (text.startswith("urn:") or text.startswith("http://www.opengis.net/def/")):
        return False
    return normalize_crs_code(value) in GEOGRAPHIC_CODES


def utm_zone_for_longitude(longitude: float, allowed_zones: Sequence[int] | None = None) -> int:
    zone = int((longitude + 180.0) // 6.0) + 1
    zone = max(1, min(60, zone))
    if allowed_zones:
        allowed = sorted(allowed_zones)
        if zone < allowed[0]:
            return allowed[0]
        if zone > allowed[-1]:
            return allowed[-1]
        if zone not in allowed:
            return min(allowed, key=lambda candidate: (abs(candidate - zone), candidate))
    return zone


def utm_crs_for_longitude(longitude: float, allowed_zones: Sequence[int] | None = None) -> str:
    zone = utm_zone_for_longitude(longitude, allowed_zones)
    # ETRS89 / UTM codes exist for the European zones only.
    if 28 <= zone <= 38:
        return f"EPSG:258{zone:02d}"
    return f"EPSG:326{zone:02d}"


def resolve_query_crs(crs: str, point: GeoPoint, allowed_zones: Sequence[int] | None = None) -> str:
    if crs.upper() == UTM_TOKEN:
        return utm_crs_for_longitude(point.longitude, allowed_zones)
    return normalize_crs_code(crs) or crs


class CRSTransformer:
    """Reprojects points and GeoJSON-like geometries between coordinate systems.

    Failures never raise: ``forward``/``inverse`` return ``None`` and
    ``transform_geometry`` returns ``None`` so callers can fall back to the
    untransformed coordinates. pyproj transformers are cached per thread.
    """

    def __init__(self) -> None:
        self._local = threading.local()

    def _cache(self) -> dict[tuple[str, str], Transformer | None]:
        cache = getattr(self._local, "cache", None)
        if cache is None:
            cache = {}
            self._local.cache = cache
        return cache

    def _transformer(self, source_crs: str, target_crs: str) -> Transformer | None:
        key = (source_crs, target_crs)
        cache = self._cache()
        if key not in cache:
            try:
                cache[key] = Transformer.from_crs(
                    CRS.from_user_input(source_crs),
                    CRS.from_user_input(target_crs),
                    always_xy=True,
                )
            except Exception:
                cache[key] = None
        return cache[key]

    def supports(self, crs: str) -> bool:
        return self._transformer(WGS84, normalize_crs_code(crs) or crs) is not None

    def _transform_xy(self, x: float, y: float, source_crs: str, target_crs: str) -> tuple[float, float] | None:
        if source_crs == target_crs:
            return x, y
        transformer = self._transformer(source_crs, target_crs)
        if transformer is None:
            return None
        try:
            out_x, out_y = transformer.transform(x, y)
        except Exception:
            return None
        if not (math.isfinite(out_x) and math.isfinite(out_y)):
            return None
        return out_x, out_y

    def forward(self, point: GeoPoint, target_crs: str) -> GeoPoint | None:
        target = normalize_crs_code(target_crs) or target_crs
        source = normalize_crs_code(point.srs_id) or point.srs_id
        transformed = self._transform_xy(point.longitude, point.latitude, source, target)
        if transformed is None:
            return None
        try:
            return GeoPoint(longitude=transformed[0], latitude=transformed[1], srs_id=target)
        except InvalidCoordinateError:
            return None

    def inverse(self, point: GeoPoint, source_crs: str) -> GeoPoint | None:
        source = normalize_crs_code(source_crs) or source_crs
        transformed = self._transform_xy(point.longitude, point.latitude, source, WGS84)
        if transformed is None:
            return None
        try:
            return GeoPoint(longitude=transformed[0], latitude=transformed[1])
        except InvalidCoordinateError:
            return None

    def transform_geometry(
        self,
        geometry: dict[str, Any] | None,
        source_crs: str,
        target_crs: str = WGS84,
        *,
        swap_axes: bool = False,
    ) -> dict[str, Any] | None:
        if not geometry or "coordinates" not in geometry:
            return None
        source = normalize_crs_code(source_crs) or source_crs
        target = normalize_crs_code(target_crs) or target_crs
        if source != target and self._transformer(source, target) is None:
            return None
        try:
            coordinates = self._map_coordinates(geometry["coordinates"], source, target, swap_axes)
        except ValueError:
            return None
        return {"type": geometry.get("type"), "coordinates": coordinates}

    def _map_coordinates(self, coords: Any, source: str, target: str, swap_axes: bool) -> Any:
        if _is_position(coords):
            x, y = float(coords[0]), float(coords[1])
            if swap_axes:
                x, y = y, x
            transformed = self._transform_xy(x, y, source, target)
            if transformed is None:
                raise ValueError("position could not be transformed")
            return [transformed[0], transformed[1]]
        if isinstance(coords, (list, tuple)):
            return [self._map_coordinates(item, source, target, swap_axes) for item in coords]
        raise ValueError(f"unexpected coordinate value: {coords!r}")


def _is_position(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) >= 2
        and all(isinstance(item, (int, float)) and not isinstance(item, bool) for item in value[:2])
    )


def meters_to_degrees(latitude: float, meters: float) -> tuple[float, float]:
    """Return ``(d_lon, d_lat)`` spanning ``meters`` at the given latitude."""
    d_lat = meters / METERS_PER_DEGREE
    cos_lat = max(math.cos(math.radians(latitude)), 1e-6)
    d_lon = meters / (METERS_PER_DEGREE * cos_lat)
    return d_lon, d_lat


def bbox_around(x: float, y: float, half_x: float, half_y: float | None = None) -> BBox:
    half_y = half_x if half_y is None else half_y
    return (x - half_x, y - half_y, x + half_x, y + half_y)


def geographic_bbox(point: GeoPoint, meters: float) -> BBox:
    d_lon, d_lat = meters_to_degrees(point.latitude, meters)
    return bbox_around(point.longitude, point.latitude, d_lon, d_lat)


def flip_axes(bbox: BBox) -> BBox:
    min_x, min_y, max_x, max_y = bbox
    return (min_y, min_x, max_y, max_x)


def bbox_strictly_contains(outer: BBox, inner: BBox) -> bool:
    return outer[0] < inner[0] and outer[1] < inner[1] and outer[2] > inner[2] and outer[3] > inner[3]


def widened_sizes(base_meters: float, factor: float, max_widenings: int) -> list[float]:
    if base_meters <= 0 or factor <= 1.0:
        raise ValueError("bbox widening needs a positive base size and a factor above 1")
    return [base_meters * factor**step for step in range(max(0, max_widenings) + 1)]


def bbox_for_crs(
    point: GeoPoint,
    meters: float,
    crs: str,
    transformer: CRSTransformer,
) -> tuple[BBox, str, list[str]]:
    """Bbox of ``meters`` half-width around ``point`` expressed in ``crs``.

    Falls back to a geographic bbox when the projection is unavailable; the
    returned CRS and notes tell the caller which one was used.
    """
    if is_geographic(crs):
        return geographic_bbox(point, meters), normalize_crs_code(crs) or WGS84, []
    projected = transformer.forward(point, crs)
    if projected is None:
        return geographic_bbox(point, meters), WGS84, [f"CRS {crs} unavailable; queried with geographic bbox"]
    return bbox_around(projected.longitude, projected.latitude, meters), projected.srs_id, []


def format_bbox(bbox: Iterable[float], crs: str | None = None) -> str:
    parts = [f"{value:.8f}".rstrip("0").rstrip(".") for value in bbox]
    if crs:
        parts.append(crs)
    return ",".join(parts)
