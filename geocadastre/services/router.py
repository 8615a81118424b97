"""Point-to-region classification."""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from geocadastre.common.constants import GEOJSON_FORMATS
from geocadastre.common.fields import code_from_href, lookup_first
from geocadastre.common.logging import log_event
from geocadastre.common.models import GeoPoint, RegionDescriptor, ServiceEndpointConfig
from geocadastre.geo.selection import FeatureSelector
from geocadastre.services.client import ProtocolClient
from geocadastre.services.registry import CountryEntry, ServiceRegistry
from geocadastre.services.reverse_geocode import ReverseGeocoder

DelegatedLookup = Callable[[GeoPoint], "str | None"]

LOGGER = logging.getLogger(__name__)


class AdminUnitLookup:
    """Name of the second-level administrative unit from an INSPIRE AU service."""

    def __init__(self, client: ProtocolClient, country: CountryEntry) -> None:
        cfg = country.delegated_lookup or {}
        self.client = client
        self.level_field = cfg.get("level_field", "nationalLevel")
        self.level_values = {str(value) for value in cfg.get("level_values", ["2nd", "2"])}
        self.name_fields = list(cfg.get("name_fields", ["text", "name"]))
        self.endpoint = ServiceEndpointConfig(
            name=f"{country.code.lower()}_admin_units",
            category="region",
            role="admin_units",
            protocol="wfs",
            base_url=cfg["base_url"],
            country=country.code,
            version="2.0.0",
            layers=(cfg["layer"],),
            output_formats=GEOJSON_FORMATS[:2],
            bbox_crs_suffix=False,
            bbox_meters=float(cfg.get("bbox_meters", 500)),
            max_widenings=0,
            max_features=int(cfg.get("max_features", 10)),
            timeout_seconds=15.0,
        )

    def __call__(self, point: GeoPoint) -> str | None:
        outcome = self.client.query_endpoint(self.endpoint, point)
        for feature in outcome.features:
            level = code_from_href(feature.properties.get(self.level_field))
            if level not in self.level_values:
                continue
            name = lookup_first(feature.properties, self.name_fields)
            if isinstance(name, str) and name.strip():
                return name.strip()
        return None


class CollectionUnitLookup:
    """Municipality name from an OGC API Features boundary collection.

    The feature covering the point wins; otherwise the first one returned.
    """

    def __init__(self, client: ProtocolClient, country: CountryEntry, selector: FeatureSelector | None = None) -> None:
        cfg = country.delegated_lookup or {}
        self.client = client
        self.selector = selector or FeatureSelector()
        self.name_fields = list(cfg.get("name_fields", ["municipio", "NOME", "nome"]))
        self.endpoint = ServiceEndpointConfig(
            name=f"{country.code.lower()}_{cfg['collection']}",
            category="region",
            role="admin_units",
            protocol="ogc_api",
            base_url=cfg["base_url"],
            country=country.code,
            layers=(cfg["collection"],),
            bbox_meters=float(cfg.get("bbox_meters", 200)),
            max_widenings=0,
            max_features=int(cfg.get("max_features", 5)),
            timeout_seconds=15.0,
            verify_tls=bool(cfg.get("verify_tls", True)),
        )

    def __call__(self, point: GeoPoint) -> str | None:
        outcome = self.client.query_endpoint(self.endpoint, point)
        best = self.selector.select_best(outcome.features, point)
        if best is None:
            return None
        name = lookup_first(best.properties, self.name_fields)
        if name is None or not str(name).strip():
            return None
        return str(name).strip()


class ReverseGeocodeLookup:
    def __init__(self, geocoder: ReverseGeocoder) -> None:
        self.geocoder = geocoder

    def __call__(self, point: GeoPoint) -> str | None:
        info = self.geocoder.lookup(point)
        return info.district if info else None


class RegionRouter:
    """Maps a point to a region label using the registry's ordered boxes.

    Box tests are offline and deterministic. Only when no region box matches
    is the country's delegated lookup consulted; any failure there degrades
    to a country-level (or fully unknown) descriptor.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        *,
        delegated_lookups: Mapping[str, DelegatedLookup] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.delegated_lookups = dict(delegated_lookups or {})
        self.logger = logger or LOGGER

    @classmethod
    def with_default_lookups(
        cls,
        registry: ServiceRegistry,
        client: ProtocolClient,
        geocoder: ReverseGeocoder | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> "RegionRouter":
        lookups: dict[str, DelegatedLookup] = {}
        for country in registry.countries:
            kind = (country.delegated_lookup or {}).get("kind")
            if kind == "admin_units":
                lookups[country.code] = AdminUnitLookup(client, country)
            elif kind == "ogc_collection":
                lookups[country.code] = CollectionUnitLookup(client, country)
            elif kind == "reverse_geocode" and geocoder is not None:
                lookups[country.code] = ReverseGeocodeLookup(geocoder)
        return cls(registry, delegated_lookups=lookups, logger=logger)

    def classify_by_box(self, point: GeoPoint) -> RegionDescriptor | None:
        for region in self.registry.regions:
            if region.box.contains(point):
                return RegionDescriptor(
                    label=region.label,
                    detection="bbox",
                    country=region.country,
                    region_key=self.registry.region_key(region.country),
                )
        return None

    def classify(self, point: GeoPoint) -> RegionDescriptor:
        descriptor = self.classify_by_box(point)
        if descriptor is None:
            descriptor = self._classify_by_country(point)
        log_event(
            self.logger,
            f"point ({point.longitude}, {point.latitude}) classified as {descriptor.label or 'unknown'}",
            level=logging.DEBUG,
            region=descriptor.label,
            event="REGION_CLASSIFIED",
            status=descriptor.detection,
        )
        return descriptor

    def _classify_by_country(self, point: GeoPoint) -> RegionDescriptor:
        country = self.registry.country_for_point(point)
        if country is None:
            return RegionDescriptor(label=None, detection="unknown")

        lookup = self.delegated_lookups.get(country.code)
        if lookup is not None:
            try:
                name = lookup(point)
            except Exception as exc:
                log_event(
                    self.logger,
                    f"delegated region lookup failed for {country.code}: {exc}",
                    level=logging.WARNING,
                    event="DELEGATED_LOOKUP_FAILED",
                    status="error",
                    error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
                )
                name = None
            if name:
                return RegionDescriptor(
                    label=self.registry.resolve_label(name, country.code) or name,
                    detection="delegated",
                    country=country.code,
                    region_key=country.region_key,
                )

        return RegionDescriptor(
            label=None,
            detection="country_bbox",
            country=country.code,
            region_key=country.region_key,
        )
