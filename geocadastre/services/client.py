"""Spatial queries against one endpoint across protocol, format, CRS, and bbox variants."""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Sequence, TypeVar
from urllib.parse import quote

import requests

from geocadastre.common.constants import GEOJSON_FORMATS, WGS84
from geocadastre.common.http import HttpClient, HttpRequestError, RetryConfig, TimeoutConfig
from geocadastre.common.logging import log_event
from geocadastre.common.models import FeatureQuery, GeoPoint, RawFeature, ServiceEndpointConfig
from geocadastre.common.time_utils import elapsed_ms
from geocadastre.geo.crs import (
    CRSTransformer,
    bbox_for_crs,
    flip_axes,
    format_bbox,
    is_geographic,
    normalize_crs_code,
    resolve_query_crs,
    widened_sizes,
)
from geocadastre.geo.gml import GMLFeatureParser, parse_capabilities_type_names

QUERYABLE_PROTOCOLS = {"wfs", "ogc_api"}
DEFAULT_WFS_VERSION = "2.0.0"
MAX_DISCOVERED_LAYERS = 10
GEOJSON_TOKEN = "geojson"
SINGLE_ATTEMPT = RetryConfig(max_attempts=1)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def first_nonempty(candidates: Iterable[T], execute: Callable[[T], Sequence[R]]) -> tuple[T | None, list[R], int]:
    """Run ``execute`` over ``candidates`` until one yields a non-empty result.

    Returns the winning candidate, its results, and how many candidates ran.
    """
    attempts = 0
    for candidate in candidates:
        attempts += 1
        results = execute(candidate)
        if results:
            return candidate, list(results), attempts
    return None, [], attempts


def _dedupe(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    for value in values:
        if value not in out:
            out.append(value)
    return out


def is_gml_format(output_format: str | None) -> bool:
    if output_format is None:
        return True
    lowered = output_format.lower()
    return "gml" in lowered or "xml" in lowered


@dataclass(frozen=True)
class ProtocolVariant:
    version: str | None
    output_format: str | None
    parser: str
    flip_axes: bool = False


@dataclass(frozen=True)
class QueryStrategy:
    """One fully described attempt; the bbox is derived from the point at run time."""

    protocol: str
    layer: str
    crs: str
    bbox_meters: float
    widening: int
    variant: ProtocolVariant

    def describe(self) -> str:
        fmt = self.variant.output_format or "GML"
        flip = " flipped" if self.variant.flip_axes else ""
        version = self.variant.version or self.protocol
        return f"{self.layer} {version} {fmt} {self.crs} {self.bbox_meters:g}m{flip}"


@dataclass
class QueryOutcome:
    endpoint: ServiceEndpointConfig
    features: list[RawFeature]
    strategy: QueryStrategy | None = None
    request_url: str | None = None
    attempts: int = 0
    layers: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.features)


def protocol_variants(endpoint: ServiceEndpointConfig, geographic: bool) -> list[ProtocolVariant]:
    """Ordered format/version variants for one layer, CRS, and bbox."""
    if endpoint.protocol == "ogc_api":
        return [ProtocolVariant(version=None, output_format="json", parser="geojson")]

    formats: list[str] = []
    for fmt in endpoint.output_formats:
        # Lower-case "geojson" expands to every MIME spelling servers use for it;
        # any other spelling, such as ArcGIS "GEOJSON", is sent as written.
        formats.extend(GEOJSON_FORMATS if fmt == GEOJSON_TOKEN else (fmt,))
    json_formats = _dedupe(fmt for fmt in formats if not is_gml_format(fmt))
    gml_formats = _dedupe(fmt for fmt in formats if is_gml_format(fmt))
    base_flip = geographic and endpoint.axis_order == "yx"

    def per_order(version: str, flip: bool) -> list[ProtocolVariant]:
        out = [ProtocolVariant(version, fmt, "geojson", flip) for fmt in json_formats]
        out.extend(ProtocolVariant(version, fmt, "gml", flip) for fmt in gml_formats)
        if endpoint.gml_fallback and not gml_formats:
            out.append(ProtocolVariant(version, None, "gml", flip))
        return out

    primary = endpoint.version or DEFAULT_WFS_VERSION
    variants = per_order(primary, base_flip)
    for version in endpoint.fallback_versions:
        orders = [base_flip, not base_flip] if geographic else [False]
        for flip in orders:
            variants.extend(per_order(version, flip))
    return variants


def build_strategies(
    endpoint: ServiceEndpointConfig,
    layers: Sequence[str],
    crs_candidates: Sequence[str],
) -> list[QueryStrategy]:
    """The endpoint's attempt table.

    Order: bbox size (narrowest first), then layer (most specific first), then
    CRS, then the protocol variants for that CRS. ``endpoint.max_attempts``
    caps each bbox size separately, so every widening step keeps its most
    preferred attempts.
    """
    sizes = widened_sizes(endpoint.bbox_meters, endpoint.widen_factor, endpoint.max_widenings)
    per_size = max(1, endpoint.max_attempts)
    strategies: list[QueryStrategy] = []
    for widening, meters in enumerate(sizes):
        step = [
            QueryStrategy(
                protocol=endpoint.protocol,
                layer=layer,
                crs=crs,
                bbox_meters=meters,
                widening=widening,
                variant=variant,
            )
            for layer in layers
            for crs in crs_candidates
            for variant in protocol_variants(endpoint, is_geographic(crs))
        ]
        strategies.extend(step[:per_size])
    return strategies


def features_from_geojson(payload: Any, default_crs: str) -> list[RawFeature]:
    if not isinstance(payload, dict):
        return []
    items = payload.get("features")
    if not isinstance(items, list):
        return []
    crs_block = payload.get("crs")
    crs_name = None
    if isinstance(crs_block, dict) and isinstance(crs_block.get("properties"), dict):
        crs_name = crs_block["properties"].get("name")
    crs = normalize_crs_code(crs_name) or default_crs
    features: list[RawFeature] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        geometry = item.get("geometry") if isinstance(item.get("geometry"), dict) else None
        properties = item.get("properties") if isinstance(item.get("properties"), dict) else {}
        feature_id = item.get("id")
        features.append(
            RawFeature(
                geometry=geometry,
                properties=dict(properties),
                id=str(feature_id) if feature_id is not None else None,
                crs=crs,
            )
        )
    return features


def layer_token(name: str | None) -> str:
    """``"Vila Real de Santo António"`` -> ``"vila_real_de_santo_antonio"``."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "_", stripped.lower()).strip("_")


def _matches_selectors(selectors: Sequence[str], *texts: str | None) -> bool:
    lowered = [sel.lower() for sel in selectors]
    for text in texts:
        if text and any(sel in text.lower() for sel in lowered):
            return True
    return False


class ProtocolClient:
    """Executes parameterised WFS / OGC API Features queries.

    Every attempt is a single time-boxed request; failures and empty results
    advance to the next strategy instead of repeating the same request.
    Nothing is cached between calls.
    """

    def __init__(
        self,
        http_client: HttpClient,
        *,
        transformer: CRSTransformer | None = None,
        gml_parser: GMLFeatureParser | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http_client = http_client
        self.transformer = transformer or CRSTransformer()
        self.gml_parser = gml_parser or GMLFeatureParser()
        self.logger = logger or LOGGER

    def build_request(self, endpoint: ServiceEndpointConfig, query: FeatureQuery) -> tuple[str, dict[str, Any]]:
        if endpoint.protocol == "ogc_api":
            url = f"{endpoint.base_url.rstrip('/')}/collections/{quote(query.layer, safe='')}/items"
            return url, {"f": "json", "bbox": format_bbox(query.bbox), "limit": query.count}

        version = query.version or DEFAULT_WFS_VERSION
        params: dict[str, Any] = {"service": "WFS", "version": version, "request": "GetFeature"}
        if version.startswith("2"):
            params["typeNames"] = query.layer
            params["count"] = query.count
        else:
            params["typeName"] = query.layer
            params["maxFeatures"] = query.count
        params["bbox"] = format_bbox(query.bbox, query.crs if endpoint.bbox_crs_suffix else None)
        params["srsName"] = query.crs
        if query.output_format:
            params["outputFormat"] = query.output_format
        return endpoint.base_url, params

    def fetch(self, endpoint: ServiceEndpointConfig, query: FeatureQuery, parser: str) -> list[RawFeature]:
        """One request; any transport or parse failure yields an empty list."""
        url, params = self.build_request(endpoint, query)
        started = time.monotonic()
        request_kwargs = {
            "source_type": endpoint.protocol,
            "params": params,
            "timeout": TimeoutConfig.from_seconds(endpoint.timeout_seconds),
            "retry": SINGLE_ATTEMPT,
            "verify": endpoint.verify_tls,
        }
        try:
            if parser == "gml":
                text = self.http_client.get_xml(url, **request_kwargs)
                features = self.gml_parser.parse(text, default_crs=query.crs)
            else:
                payload = self.http_client.get_json(url, **request_kwargs)
                features = features_from_geojson(payload, query.crs)
        except HttpRequestError as exc:
            log_event(
                self.logger,
                f"query failed on {endpoint.name} ({query.layer}): {exc}",
                level=logging.WARNING,
                source=endpoint.name,
                event="QUERY_FAILED",
                status="error",
                duration_ms=elapsed_ms(started),
                error_code=exc.error_code,
            )
            return []

        log_event(
            self.logger,
            f"query {endpoint.name} {query.layer} returned {len(features)} features",
            level=logging.DEBUG,
            source=endpoint.name,
            event="QUERY_ATTEMPT",
            status="ok" if features else "empty",
            duration_ms=elapsed_ms(started),
            feature_count=len(features),
        )
        return features

    def query(self, endpoint: ServiceEndpointConfig, query: FeatureQuery) -> list[RawFeature]:
        """Try the endpoint's format and version variants for one bbox and layer."""
        geographic = is_geographic(query.crs)

        def execute(variant: ProtocolVariant) -> list[RawFeature]:
            attempt = replace(
                query,
                version=variant.version or query.version,
                output_format=variant.output_format,
                bbox=flip_axes(query.bbox) if variant.flip_axes else query.bbox,
                flip_axes=variant.flip_axes,
            )
            return self.fetch(endpoint, attempt, variant.parser)

        _, features, _ = first_nonempty(protocol_variants(endpoint, geographic), execute)
        return features

    def discover_layers(self, endpoint: ServiceEndpointConfig, hint: str | None = None) -> list[str]:
        """Configured layers, or advertised ones matching the selectors.

        Discovered names containing ``hint`` (a region or municipality name)
        are tried first.
        """
        if endpoint.layers:
            return list(endpoint.layers)
        if not endpoint.layer_selectors or not endpoint.base_url:
            return []
        try:
            if endpoint.protocol == "ogc_api":
                candidates = self._ogc_collections(endpoint)
            else:
                candidates = self._wfs_type_names(endpoint)
        except HttpRequestError as exc:
            log_event(
                self.logger,
                f"layer discovery failed on {endpoint.name}: {exc}",
                level=logging.WARNING,
                source=endpoint.name,
                event="DISCOVERY_FAILED",
                status="error",
                error_code=exc.error_code,
            )
            return []
        preferred = [name for name, title in candidates if _matches_selectors(endpoint.layer_selectors, name, title)]
        names = _dedupe(preferred or [name for name, _ in candidates])
        token = layer_token(hint)
        if token:

            def rank(name: str) -> tuple[bool, bool]:
                # "crus_lisboa" beats "crus_lisboa_norte" for the hint "Lisboa".
                normalized = layer_token(name)
                return (not normalized.endswith(f"_{token}") and normalized != token, token not in normalized)

            names.sort(key=rank)
        return names[:MAX_DISCOVERED_LAYERS]

    def _ogc_collections(self, endpoint: ServiceEndpointConfig) -> list[tuple[str, str | None]]:
        payload = self.http_client.get_json(
            f"{endpoint.base_url.rstrip('/')}/collections",
            source_type=endpoint.protocol,
            params={"f": "json"},
            timeout=TimeoutConfig.from_seconds(endpoint.timeout_seconds),
            retry=SINGLE_ATTEMPT,
            verify=endpoint.verify_tls,
        )
        collections = payload.get("collections") if isinstance(payload, dict) else None
        out = []
        for item in collections or []:
            if isinstance(item, dict) and item.get("id"):
                out.append((str(item["id"]), item.get("title")))
        return out

    def _wfs_type_names(self, endpoint: ServiceEndpointConfig) -> list[tuple[str, str | None]]:
        text = self.http_client.get_xml(
            endpoint.base_url,
            source_type=endpoint.protocol,
            params={"service": "WFS", "request": "GetCapabilities", "version": endpoint.version or DEFAULT_WFS_VERSION},
            timeout=TimeoutConfig.from_seconds(endpoint.timeout_seconds),
            retry=SINGLE_ATTEMPT,
            verify=endpoint.verify_tls,
        )
        return [(name, None) for name in parse_capabilities_type_names(text)]

    def candidate_crs(self, endpoint: ServiceEndpointConfig, point: GeoPoint, utm_zones: Sequence[int] = ()) -> list[str]:
        if endpoint.protocol == "ogc_api":
            return [WGS84]
        return _dedupe(
            resolve_query_crs(crs, point, utm_zones) for crs in (endpoint.preferred_crs, *endpoint.alternate_crs)
        )

    def usable_crs(self, point: GeoPoint, candidates: Sequence[str]) -> tuple[list[str], list[str]]:
        """Replace candidates the point cannot be projected into with WGS84.

        Variants are derived from the returned codes, so a projected CRS that
        falls back to a geographic bbox also gets the axis-order variants.
        """
        usable: list[str] = []
        notes: list[str] = []
        for crs in candidates:
            if not is_geographic(crs) and self.transformer.forward(point, crs) is None:
                notes.append(f"CRS {crs} unavailable; queried with geographic bbox")
                crs = WGS84
            usable.append(crs)
        return _dedupe(usable), notes

    def query_endpoint(
        self,
        endpoint: ServiceEndpointConfig,
        point: GeoPoint,
        *,
        utm_zones: Sequence[int] = (),
        layer_hint: str | None = None,
    ) -> QueryOutcome:
        """Run the endpoint's whole strategy table until some attempt returns features."""
        if endpoint.protocol not in QUERYABLE_PROTOCOLS or not endpoint.base_url:
            note = endpoint.notes or f"{endpoint.display_type} endpoint cannot be queried for features"
            return QueryOutcome(endpoint=endpoint, features=[], notes=[note])

        layers = self.discover_layers(endpoint, layer_hint)
        if not layers:
            return QueryOutcome(
                endpoint=endpoint,
                features=[],
                notes=[f"No candidate layers available from {endpoint.name}"],
            )

        crs_candidates, notes = self.usable_crs(point, self.candidate_crs(endpoint, point, utm_zones))
        strategies = build_strategies(endpoint, layers, crs_candidates)

        def execute(strategy: QueryStrategy) -> list[RawFeature]:
            query, bbox_notes = self.strategy_query(endpoint, point, strategy)
            for note in bbox_notes:
                if note not in notes:
                    notes.append(note)
            return self.fetch(endpoint, query, strategy.variant.parser)

        strategy, features, attempts = first_nonempty(strategies, execute)
        request_url = None
        if strategy is not None:
            url, params = self.build_request(endpoint, self.strategy_query(endpoint, point, strategy)[0])
            request_url = requests.Request("GET", url, params=params).prepare().url
            if strategy.widening:
                notes.append(f"Features found after widening the search box to {strategy.bbox_meters:g} m")
        else:
            notes.append(
                f"No features returned by {endpoint.name} after {attempts} attempts (layers: {', '.join(layers)})"
            )
        via = f" via {strategy.describe()}" if strategy is not None else ""
        log_event(
            self.logger,
            f"endpoint {endpoint.name} resolved {len(features)} features in {attempts} attempts{via}",
            source=endpoint.name,
            event="ENDPOINT_QUERIED",
            status="ok" if features else "empty",
            attempt=attempts,
            feature_count=len(features),
        )
        return QueryOutcome(
            endpoint=endpoint,
            features=features,
            strategy=strategy,
            request_url=request_url,
            attempts=attempts,
            layers=layers,
            notes=notes,
        )

    def strategy_query(
        self,
        endpoint: ServiceEndpointConfig,
        point: GeoPoint,
        strategy: QueryStrategy,
    ) -> tuple[FeatureQuery, list[str]]:
        bbox, bbox_crs, notes = bbox_for_crs(point, strategy.bbox_meters, strategy.crs, self.transformer)
        variant = strategy.variant
        query = FeatureQuery(
            layer=strategy.layer,
            bbox=flip_axes(bbox) if variant.flip_axes else bbox,
            crs=bbox_crs,
            version=variant.version,
            output_format=variant.output_format,
            count=endpoint.max_features,
            flip_axes=variant.flip_axes,
        )
        return query, notes
