"""Data models shared by routing, querying, and enrichment."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any

from geocadastre.common.constants import WGS84
from geocadastre.common.errors import InvalidCoordinateError
from geocadastre.common.srs import is_geographic

BBox = tuple[float, float, float, float]


@dataclass(frozen=True)
class GeoPoint:
    longitude: float
    latitude: float
    srs_id: str = WGS84

    def __post_init__(self) -> None:
        if not (math.isfinite(self.longitude) and math.isfinite(self.latitude)):
            raise InvalidCoordinateError(f"Non-finite coordinate: ({self.longitude}, {self.latitude})")
        if is_geographic(self.srs_id):
            if not -90.0 <= self.latitude <= 90.0:
                raise InvalidCoordinateError(f"Latitude out of range: {self.latitude}")
            if not -180.0 <= self.longitude <= 180.0:
                raise InvalidCoordinateError(f"Longitude out of range: {self.longitude}")

    @classmethod
    def from_values(cls, longitude: Any, latitude: Any, srs_id: str = WGS84) -> "GeoPoint":
        try:
            lon = float(longitude)
            lat = float(latitude)
        except (TypeError, ValueError) as exc:
            raise InvalidCoordinateError(f"Unparseable coordinate: ({longitude!r}, {latitude!r})") from exc
        return cls(longitude=lon, latitude=lat, srs_id=srs_id)

    @property
    def xy(self) -> tuple[float, float]:
        return self.longitude, self.latitude


@dataclass(frozen=True)
class RegionDescriptor:
    label: str | None
    detection: str
    country: str | None = None
    region_key: str = "region"

    @property
    def known(self) -> bool:
        return self.label is not None


@dataclass(frozen=True)
class ServiceEndpointConfig:
    name: str
    category: str
    role: str
    protocol: str
    base_url: str | None
    region: str | None = None
    country: str | None = None
    version: str | None = None
    fallback_versions: tuple[str, ...] = ()
    layers: tuple[str, ...] = ()
    layer_selectors: tuple[str, ...] = ()
    preferred_crs: str = WGS84
    alternate_crs: tuple[str, ...] = ()
    output_formats: tuple[str, ...] = ()
    gml_fallback: bool = True
    axis_order: str = "xy"
    bbox_crs_suffix: bool = True
    bbox_meters: float = 100.0
    widen_factor: float = 2.0
    max_widenings: int = 2
    max_features: int = 20
    max_attempts: int = 40
    timeout_seconds: float = 30.0
    verify_tls: bool = True
    wms_url: str | None = None
    wms_layers: tuple[str, ...] = ()
    label_fields: tuple[str, ...] = ()
    source: str | None = None
    service_type: str | None = None
    notes: str | None = None

    @property
    def display_type(self) -> str:
        if self.service_type:
            return self.service_type
        return {"wfs": "WFS", "ogc_api": "OGC API Features", "atom": "ATOM"}.get(self.protocol, self.protocol)


@dataclass(frozen=True)
class FeatureQuery:
    layer: str
    bbox: BBox
    crs: str
    version: str | None
    output_format: str | None
    count: int
    flip_axes: bool = False


@dataclass
class RawFeature:
    geometry: dict[str, Any] | None
    properties: dict[str, Any]
    id: str | None = None
    crs: str = WGS84
    # "yx" when coordinates arrived latitude first (URN-style geographic srsName).
    axis_order: str = "xy"


@dataclass
class NormalizedRecord:
    category: str
    role: str
    reference_id: str | None
    label: str | None
    area_m2: float | None
    classification_code: str | None
    geometry: dict[str, Any] | None
    source: str | None
    service_url: str | None
    notes: list[str] = field(default_factory=list)
    picked_field: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PlotRecord:
    id: str
    longitude: float | None
    latitude: float | None
    country: str | None = None

    def point(self) -> GeoPoint:
        return GeoPoint.from_values(self.longitude, self.latitude)
