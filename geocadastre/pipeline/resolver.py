"""Per-point resolution: route, query, select, normalise."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Sequence

import requests

from geocadastre.common.constants import PRIMARY_ROLES, SUPPLEMENTAL_ROLES
from geocadastre.common.errors import ConfigError
from geocadastre.common.logging import log_event
from geocadastre.common.models import GeoPoint, NormalizedRecord, RegionDescriptor, ServiceEndpointConfig
from geocadastre.common.time_utils import elapsed_ms
from geocadastre.geo.crs import CRSTransformer, bbox_around, format_bbox, utm_crs_for_longitude
from geocadastre.geo.selection import FeatureSelector, Selection, reference_point, scaled_degree_distance
from geocadastre.pipeline.normalise import (
    ADDRESS_FIELDS,
    BUILDING_FIELDS,
    compose_label,
    feature_to_wgs84,
    normalize_feature,
    sample_properties,
    summarize_record,
)
from geocadastre.services.client import ProtocolClient, QueryOutcome
from geocadastre.services.registry import ServiceRegistry
from geocadastre.services.reverse_geocode import ReverseGeocoder
from geocadastre.services.router import RegionRouter

WMS_BUFFER_METERS = 150.0
WMS_SIZE = (1024, 768)
SUPPLEMENTAL_SUMMARY_FIELDS = {"building": BUILDING_FIELDS, "address": ADDRESS_FIELDS}

LOGGER = logging.getLogger(__name__)


@dataclass
class Resolution:
    endpoint: ServiceEndpointConfig
    outcome: QueryOutcome
    selection: Selection
    record: NormalizedRecord


def _extend_unique(target: list[str], notes: Sequence[str]) -> None:
    for note in notes:
        if note and note not in target:
            target.append(note)


def join_notes(notes: Sequence[str]) -> str | None:
    return "; ".join(notes) if notes else None


def point_label(point: GeoPoint) -> str:
    return f"({point.longitude:.6f}, {point.latitude:.6f})"


def wms_map_url(endpoint: ServiceEndpointConfig, point: GeoPoint, utm_crs: str, transformer: CRSTransformer) -> str | None:
    """GetMap URL centred on the point, or None when the service has no WMS."""
    if not endpoint.wms_url or not endpoint.wms_layers:
        return None
    projected = transformer.forward(point, utm_crs)
    if projected is None:
        return None
    width, height = WMS_SIZE
    bbox = bbox_around(projected.longitude, projected.latitude, WMS_BUFFER_METERS)
    params = {
        "SERVICE": "WMS",
        "VERSION": "1.1.1",
        "REQUEST": "GetMap",
        "LAYERS": ",".join(endpoint.wms_layers),
        "STYLES": "",
        "SRS": utm_crs,
        "BBOX": format_bbox(bbox),
        "WIDTH": width,
        "HEIGHT": height,
        "FORMAT": "image/png",
        "TRANSPARENT": "FALSE",
    }
    return requests.Request("GET", endpoint.wms_url, params=params).prepare().url


class PointResolver:
    """Resolves one point for one category into a persisted payload.

    Never raises for missing data: unknown regions, unconfigured services and
    empty responses all produce a sentinel payload with ``feature_count`` 0
    and explanatory ``notes``. Invalid coordinates are rejected before any
    request is made (``GeoPoint`` validates on construction).
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        router: RegionRouter,
        client: ProtocolClient,
        *,
        transformer: CRSTransformer | None = None,
        selector: FeatureSelector | None = None,
        geocoder: ReverseGeocoder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.client = client
        self.transformer = transformer or client.transformer
        self.selector = selector or FeatureSelector()
        self.geocoder = geocoder
        self.logger = logger or LOGGER

    def resolve(self, point: GeoPoint, category: str) -> dict[str, Any]:
        started = time.monotonic()
        if category == "municipality":
            payload = self.resolve_municipality(point)
            region_label = None
        else:
            region = self.router.classify(point)
            region_label = region.label
            if category == "zoning":
                payload = self.resolve_zoning(point, region)
            elif category == "cadastral":
                payload = self.resolve_cadastral(point, region)
            else:
                raise ConfigError(f"Unknown enrichment category: {category}")
        log_event(
            self.logger,
            f"{category} resolved for {point_label(point)}",
            category=category,
            region=region_label,
            event="POINT_RESOLVED",
            status="ok" if payload.get("feature_count") else "empty",
            duration_ms=elapsed_ms(started),
            feature_count=payload.get("feature_count"),
        )
        return payload

    def resolve_role(
        self,
        endpoints: Sequence[ServiceEndpointConfig],
        point: GeoPoint,
        region: RegionDescriptor,
    ) -> tuple[Resolution | None, list[str]]:
        """Query endpoints in order; the first one with features wins."""
        notes: list[str] = []
        zones = self.registry.utm_zones(region.country)
        for endpoint in endpoints:
            outcome = self.client.query_endpoint(endpoint, point, utm_zones=zones, layer_hint=region.label)
            if not outcome.found:
                _extend_unique(notes, outcome.notes)
                continue
            converted = []
            feature_notes: list[str] = []
            for feature in outcome.features:
                wgs84, reprojection_notes = feature_to_wgs84(feature, self.transformer)
                converted.append(wgs84)
                _extend_unique(feature_notes, reprojection_notes)
            selection = self.selector.select(converted, point)
            record = normalize_feature(
                selection.feature,
                endpoint,
                service_url=outcome.request_url,
                notes=[*outcome.notes, *feature_notes],
            )
            return Resolution(endpoint, outcome, selection, record), notes
        return None, notes

    def resolve_zoning(self, point: GeoPoint, region: RegionDescriptor) -> dict[str, Any]:
        if region.country is None:
            return self.zoning_sentinel(
                region,
                [f"Could not determine region for point {point_label(point)}"],
                service_type="unknown",
            )
        endpoints = self.registry.lookup(region, "zoning", role=PRIMARY_ROLES["zoning"])
        if not endpoints:
            where = region.label or region.country
            return self.zoning_sentinel(region, [f"No zoning service configured for {where}"], service_type="unknown")

        resolution, notes = self.resolve_role(endpoints, point, region)
        if resolution is None:
            first = endpoints[0]
            return self.zoning_sentinel(
                region,
                notes or [f"No zoning features found near {point_label(point)}"],
                service_type=first.display_type,
                service_url=first.base_url,
                source=first.source or first.name,
            )

        record = resolution.record
        endpoint = resolution.endpoint
        outcome = resolution.outcome
        composed = compose_label(record.properties)
        payload = {
            "label": composed or record.label,
            "picked_field": record.picked_field,
            "zoning_code": record.classification_code,
            region.region_key: region.label,
            "region": region.label,
            "country": region.country,
            "service_type": endpoint.display_type,
            "service_url": record.service_url,
            "typename": outcome.strategy.layer if outcome.strategy else None,
            "feature_id": resolution.selection.feature.id,
            "feature_count": len(outcome.features),
            "sample_properties": sample_properties(record.properties),
            "source": record.source,
            "notes": join_notes(record.notes),
        }
        return payload

    def zoning_sentinel(
        self,
        region: RegionDescriptor,
        notes: list[str],
        *,
        service_type: str,
        service_url: str | None = None,
        source: str | None = None,
    ) -> dict[str, Any]:
        return {
            "label": None,
            "picked_field": None,
            "zoning_code": None,
            region.region_key: region.label,
            "region": region.label,
            "country": region.country,
            "service_type": service_type,
            "service_url": service_url,
            "typename": None,
            "feature_id": None,
            "feature_count": 0,
            "sample_properties": {},
            "source": source,
            "notes": join_notes(notes),
        }

    def resolve_cadastral(self, point: GeoPoint, region: RegionDescriptor) -> dict[str, Any]:
        if region.country is None:
            return self.cadastral_sentinel([f"Could not determine country for point {point_label(point)}"])
        endpoints = self.registry.lookup(region, "cadastral", role=PRIMARY_ROLES["cadastral"])
        if not endpoints:
            return self.cadastral_sentinel([f"No cadastral service configured for {region.label or region.country}"])

        utm_crs = utm_crs_for_longitude(point.longitude, self.registry.utm_zones(region.country))
        resolution, notes = self.resolve_role(endpoints, point, region)
        if resolution is None:
            first = endpoints[0]
            return self.cadastral_sentinel(
                notes or [f"No cadastral parcel found near {point_label(point)}"],
                source=first.source or first.name,
                service_url=first.base_url,
                utm_crs=utm_crs,
            )

        record = resolution.record
        selection = resolution.selection
        notes = list(record.notes)
        supplementals = self.resolve_supplementals(point, region, notes)

        ref = reference_point(selection.feature)
        distance = selection.distance_meters
        if distance is None and ref is not None:
            distance = scaled_degree_distance(ref, point.xy)
        return {
            "cadastral_reference": record.reference_id,
            "label": record.label,
            "parcel_area_m2": record.area_m2,
            "geometry": record.geometry,
            "source": record.source,
            "service_url": record.service_url,
            "notes": join_notes(notes),
            "inspire_id": selection.feature.properties.get("localId") or selection.feature.id,
            "reference_point": list(ref) if ref is not None else None,
            "distance_meters": round(distance, 2) if distance is not None else None,
            "contains_point": selection.contains_point,
            "building": supplementals.get("building"),
            "address": supplementals.get("address"),
            "utm_crs": utm_crs,
            "map_image_url": wms_map_url(resolution.endpoint, point, utm_crs, self.transformer),
            "feature_count": len(resolution.outcome.features),
        }

    def resolve_supplementals(
        self,
        point: GeoPoint,
        region: RegionDescriptor,
        notes: list[str],
    ) -> dict[str, dict[str, Any] | None]:
        """Building and address lookups run concurrently; failures become notes."""
        roles = [
            (role, self.registry.lookup(region, "cadastral", role=role))
            for role in SUPPLEMENTAL_ROLES["cadastral"]
        ]
        roles = [(role, endpoints) for role, endpoints in roles if endpoints]
        results: dict[str, dict[str, Any] | None] = {}
        if not roles:
            return results

        with ThreadPoolExecutor(max_workers=len(roles)) as pool:
            futures = {role: pool.submit(self.resolve_role, endpoints, point, region) for role, endpoints in roles}
            for role, future in futures.items():
                try:
                    resolution, role_notes = future.result()
                except Exception as exc:
                    log_event(
                        self.logger,
                        f"{role} lookup failed: {exc}",
                        level=logging.WARNING,
                        category="cadastral",
                        region=region.label,
                        event="SUPPLEMENTAL_FAILED",
                        status="error",
                        error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
                    )
                    results[role] = None
                    _extend_unique(notes, [f"{role.capitalize()} lookup failed: {exc}"])
                    continue
                if resolution is None:
                    results[role] = None
                    _extend_unique(notes, [f"No {role} found near the parcel"])
                    continue
                results[role] = summarize_record(resolution.record, SUPPLEMENTAL_SUMMARY_FIELDS[role])
        return results

    def cadastral_sentinel(
        self,
        notes: list[str],
        *,
        source: str | None = None,
        service_url: str | None = None,
        utm_crs: str | None = None,
    ) -> dict[str, Any]:
        return {
            "cadastral_reference": None,
            "label": None,
            "parcel_area_m2": None,
            "geometry": None,
            "source": source,
            "service_url": service_url,
            "notes": join_notes(notes),
            "inspire_id": None,
            "reference_point": None,
            "distance_meters": None,
            "contains_point": False,
            "building": None,
            "address": None,
            "utm_crs": utm_crs,
            "map_image_url": None,
            "feature_count": 0,
        }

    def resolve_municipality(self, point: GeoPoint) -> dict[str, Any]:
        if self.geocoder is None:
            return self.municipality_sentinel("No reverse geocoder configured")
        info = self.geocoder.lookup(point)
        if info is None:
            return self.municipality_sentinel(f"Reverse geocoding returned no municipality for {point_label(point)}")
        payload = info.to_dict()
        payload.update({"source": "reverse_geocode", "feature_count": 1, "notes": None})
        return payload

    def municipality_sentinel(self, note: str) -> dict[str, Any]:
        return {
            "name": None,
            "district": None,
            "country_code": None,
            "display_name": None,
            "source": "reverse_geocode",
            "feature_count": 0,
            "notes": note,
        }
