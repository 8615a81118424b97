"""Static, data-driven table of per-region geodata endpoints."""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from geocadastre.common.config_loader import load_registry_config
from geocadastre.common.constants import WGS84
from geocadastre.common.models import GeoPoint, RegionDescriptor, ServiceEndpointConfig


def normalize_name(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


@dataclass(frozen=True)
class LonLatBox:
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_config(cls, cfg: dict) -> "LonLatBox":
        return cls(
            min_lon=float(cfg["min_lon"]),
            min_lat=float(cfg["min_lat"]),
            max_lon=float(cfg["max_lon"]),
            max_lat=float(cfg["max_lat"]),
        )

    def contains(self, point: GeoPoint) -> bool:
        return self.min_lon <= point.longitude <= self.max_lon and self.min_lat <= point.latitude <= self.max_lat


@dataclass(frozen=True)
class RegionEntry:
    label: str
    country: str
    box: LonLatBox
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class CountryEntry:
    code: str
    name: str
    region_key: str
    box: LonLatBox
    utm_zones: tuple[int, ...]
    delegated_lookup: dict[str, Any] | None = None
    parts: tuple[LonLatBox, ...] = ()

    def contains(self, point: GeoPoint) -> bool:
        """Inside the outer box and, when parts are configured, inside one of them."""
        if not self.box.contains(point):
            return False
        return not self.parts or any(part.contains(point) for part in self.parts)


def _service_from_config(cfg: dict) -> ServiceEndpointConfig:
    tuple_fields = {
        "fallback_versions",
        "layers",
        "layer_selectors",
        "alternate_crs",
        "output_formats",
        "label_fields",
        "wms_layers",
    }
    kwargs: dict[str, Any] = {}
    for key, value in cfg.items():
        if key in tuple_fields:
            kwargs[key] = tuple(str(item) for item in (value or []))
        elif key in {"bbox_meters", "widen_factor", "timeout_seconds"}:
            kwargs[key] = float(value)
        elif key in {"max_widenings", "max_features", "max_attempts"}:
            kwargs[key] = int(value)
        else:
            kwargs[key] = value
    kwargs.setdefault("preferred_crs", WGS84)
    return ServiceEndpointConfig(**kwargs)


class ServiceRegistry:
    """Ordered region boxes, country metadata, and endpoint configs.

    Built from validated config; never touches the network. ``lookup`` on an
    unconfigured region returns an empty list.
    """

    def __init__(
        self,
        countries: list[CountryEntry],
        regions: list[RegionEntry],
        services: list[ServiceEndpointConfig],
    ) -> None:
        self.countries = tuple(countries)
        self.regions = tuple(regions)
        self.services = tuple(services)
        self._countries_by_code = {country.code: country for country in countries}
        self._labels: dict[tuple[str, str], str] = {}
        for region in regions:
            for name in (region.label, *region.aliases):
                self._labels.setdefault((region.country, normalize_name(name)), region.label)

    @classmethod
    def from_config(cls, cfg: dict) -> "ServiceRegistry":
        countries = [
            CountryEntry(
                code=item["code"],
                name=item["name"],
                region_key=item["region_key"],
                box=LonLatBox.from_config(item["bbox"]),
                utm_zones=tuple(int(zone) for zone in item["utm_zones"]),
                delegated_lookup=item.get("delegated_lookup"),
                parts=tuple(LonLatBox.from_config(part) for part in item.get("parts") or ()),
            )
            for item in cfg["countries"]
        ]
        regions = [
            RegionEntry(
                label=item["label"],
                country=item["country"],
                box=LonLatBox.from_config(item["bbox"]),
                aliases=tuple(item.get("aliases") or ()),
            )
            for item in cfg["regions"]
        ]
        services = [_service_from_config(item) for item in cfg["services"]]
        return cls(countries, regions, services)

    @classmethod
    def from_config_dir(cls, config_dir: Path, *, overlay_config_dir: Path | None = None) -> "ServiceRegistry":
        return cls.from_config(load_registry_config(config_dir, overlay_config_dir=overlay_config_dir))

    def country(self, code: str | None) -> CountryEntry | None:
        if code is None:
            return None
        return self._countries_by_code.get(code)

    def country_for_point(self, point: GeoPoint) -> CountryEntry | None:
        for country in self.countries:
            if country.contains(point):
                return country
        return None

    def region_key(self, country_code: str | None) -> str:
        country = self.country(country_code)
        return country.region_key if country else "region"

    def utm_zones(self, country_code: str | None) -> tuple[int, ...]:
        country = self.country(country_code)
        return country.utm_zones if country else ()

    def resolve_label(self, name: str | None, country_code: str | None = None) -> str | None:
        """Map a boundary-service name onto a configured region label."""
        if not name:
            return None
        key = normalize_name(name)
        if country_code is not None:
            return self._labels.get((country_code, key))
        for (_, alias), label in self._labels.items():
            if alias == key:
                return label
        return None

    def lookup(
        self,
        region: RegionDescriptor | str | None,
        category: str | None = None,
        *,
        role: str | None = None,
    ) -> list[ServiceEndpointConfig]:
        if isinstance(region, RegionDescriptor):
            label, country = region.label, region.country
        else:
            label, country = region, None
        if label is not None and country is None:
            entry = next((item for item in self.regions if item.label == label), None)
            country = entry.country if entry else None

        def wanted(service: ServiceEndpointConfig) -> bool:
            if category is not None and service.category != category:
                return False
            return role is None or service.role == role

        regional = [service for service in self.services if label is not None and service.region == label]
        national = [service for service in self.services if country is not None and service.country == country]
        return [service for service in [*regional, *national] if wanted(service)]
