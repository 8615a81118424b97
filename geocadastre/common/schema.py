"""Minimal strict schemas for the service registry YAML."""

from __future__ import annotations

from geocadastre.common.errors import ConfigError

CATEGORIES_WITH_SERVICES = {"cadastral", "zoning"}
SERVICE_ROLES = {"parcel", "building", "address", "zoning"}
PROTOCOLS = {"wfs", "ogc_api", "atom"}
WFS_VERSIONS = {"1.1.0", "2.0.0"}
DELEGATED_KINDS = {"admin_units", "ogc_collection", "reverse_geocode"}

BBOX_KEYS = {"min_lon", "max_lon", "min_lat", "max_lat"}
COUNTRY_REQUIRED = {"code", "name", "region_key", "bbox", "utm_zones"}
COUNTRY_KNOWN = COUNTRY_REQUIRED | {"delegated_lookup", "parts"}
DELEGATED_KNOWN = {
    "kind",
    "base_url",
    "layer",
    "collection",
    "level_field",
    "level_values",
    "name_fields",
    "bbox_meters",
    "max_features",
    "verify_tls",
}
REGION_REQUIRED = {"label", "country", "bbox"}
REGION_KNOWN = REGION_REQUIRED | {"aliases", "within"}
SERVICE_REQUIRED = {"name", "category", "role", "protocol", "base_url"}
SERVICE_KNOWN = SERVICE_REQUIRED | {
    "region",
    "country",
    "version",
    "fallback_versions",
    "layers",
    "layer_selectors",
    "preferred_crs",
    "alternate_crs",
    "output_formats",
    "gml_fallback",
    "axis_order",
    "bbox_crs_suffix",
    "bbox_meters",
    "widen_factor",
    "max_widenings",
    "max_features",
    "max_attempts",
    "timeout_seconds",
    "verify_tls",
    "wms_url",
    "wms_layers",
    "label_fields",
    "source",
    "service_type",
    "notes",
}


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_list(value, ctx: str) -> list:
    if not isinstance(value, list):
        raise ConfigError(f"{ctx} must be a list")
    return value


def _validate_bbox(bbox: dict, ctx: str) -> None:
    _assert_required_keys(bbox, BBOX_KEYS, ctx)
    try:
        min_lon, max_lon = float(bbox["min_lon"]), float(bbox["max_lon"])
        min_lat, max_lat = float(bbox["min_lat"]), float(bbox["max_lat"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{ctx} values must be numeric") from exc
    if min_lon >= max_lon or min_lat >= max_lat:
        raise ConfigError(f"{ctx} must have min < max on both axes")


def boxes_overlap(a: dict, b: dict) -> bool:
    """Interior overlap; boxes that only share an edge do not overlap."""
    return (
        a["min_lon"] < b["max_lon"]
        and b["min_lon"] < a["max_lon"]
        and a["min_lat"] < b["max_lat"]
        and b["min_lat"] < a["max_lat"]
    )


def box_contains(outer: dict, inner: dict) -> bool:
    return (
        outer["min_lon"] <= inner["min_lon"]
        and inner["max_lon"] <= outer["max_lon"]
        and outer["min_lat"] <= inner["min_lat"]
        and inner["max_lat"] <= outer["max_lat"]
    )


def country_area(country: dict) -> list[dict]:
    return list(country.get("parts") or [country["bbox"]])


def _validate_region_overlaps(regions: list[dict]) -> None:
    """Peer boxes are disjoint; only a sub-region may sit inside the later region it names in ``within``."""
    for idx, earlier in enumerate(regions):
        parent = earlier.get("within")
        for later in regions[idx + 1 :]:
            if not boxes_overlap(earlier["bbox"], later["bbox"]):
                continue
            if parent != later["label"]:
                raise ConfigError(f"Region boxes overlap: {earlier['label']} / {later['label']}")
            if not box_contains(later["bbox"], earlier["bbox"]):
                raise ConfigError(f"Region {earlier['label']} is not inside {later['label']}")
        if parent is not None and parent not in {later["label"] for later in regions[idx + 1 :]}:
            raise ConfigError(f"Region {earlier['label']} must precede the region it is within: {parent}")


def _validate_region_countries(regions: list[dict], countries: list[dict]) -> None:
    for region in regions:
        for country in countries:
            if country["code"] == region["country"]:
                continue
            if any(boxes_overlap(region["bbox"], part) for part in country_area(country)):
                raise ConfigError(f"Region {region['label']} overlaps country {country['code']}")


def _validate_country(country: dict, idx: int, allow_unknown: bool) -> None:
    ctx = f"countries[{idx}]"
    _assert_required_keys(country, COUNTRY_REQUIRED, ctx)
    _assert_no_unknown_keys(country, COUNTRY_KNOWN, ctx, allow_unknown)
    _validate_bbox(country["bbox"], f"{ctx}.bbox")
    for part_idx, part in enumerate(_assert_list(country.get("parts") or [], f"{ctx}.parts")):
        _validate_bbox(part, f"{ctx}.parts[{part_idx}]")
        if not box_contains(country["bbox"], part):
            raise ConfigError(f"{ctx}.parts[{part_idx}] must lie inside {ctx}.bbox")
    zones = _assert_list(country["utm_zones"], f"{ctx}.utm_zones")
    if not zones or not all(isinstance(zone, int) and 1 <= zone <= 60 for zone in zones):
        raise ConfigError(f"{ctx}.utm_zones must list zone numbers 1-60")

    delegated = country.get("delegated_lookup")
    if delegated is None:
        return
    _assert_required_keys(delegated, {"kind"}, f"{ctx}.delegated_lookup")
    _assert_no_unknown_keys(delegated, DELEGATED_KNOWN, f"{ctx}.delegated_lookup", allow_unknown)
    if delegated["kind"] not in DELEGATED_KINDS:
        raise ConfigError(f"{ctx}.delegated_lookup.kind must be one of {sorted(DELEGATED_KINDS)}")
    if delegated["kind"] == "admin_units":
        _assert_required_keys(delegated, {"base_url", "layer"}, f"{ctx}.delegated_lookup")
    if delegated["kind"] == "ogc_collection":
        _assert_required_keys(delegated, {"base_url", "collection"}, f"{ctx}.delegated_lookup")


def _validate_service(service: dict, idx: int, labels: set[str], codes: set[str], allow_unknown: bool) -> None:
    ctx = f"services[{idx}]"
    _assert_required_keys(service, SERVICE_REQUIRED, ctx)
    _assert_no_unknown_keys(service, SERVICE_KNOWN, ctx, allow_unknown)

    if ("region" in service) == ("country" in service):
        raise ConfigError(f"{ctx} must set exactly one of region or country")
    if "region" in service and service["region"] not in labels:
        raise ConfigError(f"{ctx} references unknown region: {service['region']}")
    if "country" in service and service["country"] not in codes:
        raise ConfigError(f"{ctx} references unknown country: {service['country']}")
    if service["category"] not in CATEGORIES_WITH_SERVICES:
        raise ConfigError(f"{ctx}.category must be one of {sorted(CATEGORIES_WITH_SERVICES)}")
    if service["role"] not in SERVICE_ROLES:
        raise ConfigError(f"{ctx}.role must be one of {sorted(SERVICE_ROLES)}")
    if service["protocol"] not in PROTOCOLS:
        raise ConfigError(f"{ctx}.protocol must be one of {sorted(PROTOCOLS)}")

    if service["protocol"] == "atom":
        return
    if not service["base_url"]:
        raise ConfigError(f"{ctx}.base_url is required for {service['protocol']} services")
    if not (service.get("layers") or service.get("layer_selectors")):
        raise ConfigError(f"{ctx} needs layers or layer_selectors")
    if service["protocol"] == "wfs":
        versions = [service.get("version"), *(service.get("fallback_versions") or [])]
        if any(version not in WFS_VERSIONS for version in versions):
            raise ConfigError(f"{ctx} WFS versions must be within {sorted(WFS_VERSIONS)}")
    if service.get("axis_order", "xy") not in {"xy", "yx"}:
        raise ConfigError(f"{ctx}.axis_order must be xy or yx")
    if float(service.get("bbox_meters", 100)) <= 0:
        raise ConfigError(f"{ctx}.bbox_meters must be positive")
    if float(service.get("widen_factor", 2.0)) <= 1.0:
        raise ConfigError(f"{ctx}.widen_factor must be greater than 1")


def validate_registry_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    top_required = {"version", "countries", "regions", "services"}
    _assert_required_keys(cfg, top_required, "service registry")
    _assert_no_unknown_keys(cfg, top_required, "service registry", allow_unknown)

    countries = _assert_list(cfg["countries"], "countries")
    codes: set[str] = set()
    for idx, country in enumerate(countries):
        _validate_country(country, idx, allow_unknown)
        if country["code"] in codes:
            raise ConfigError(f"Duplicate country code: {country['code']}")
        codes.add(country["code"])

    regions = _assert_list(cfg["regions"], "regions")
    labels: set[str] = set()
    for idx, region in enumerate(regions):
        ctx = f"regions[{idx}]"
        _assert_required_keys(region, REGION_REQUIRED, ctx)
        _assert_no_unknown_keys(region, REGION_KNOWN, ctx, allow_unknown)
        _validate_bbox(region["bbox"], f"{ctx}.bbox")
        if region["country"] not in codes:
            raise ConfigError(f"{ctx} references unknown country: {region['country']}")
        if region["label"] in labels:
            raise ConfigError(f"Duplicate region label: {region['label']}")
        labels.add(region["label"])
    _validate_region_overlaps(regions)
    _validate_region_countries(regions, countries)

    names: set[str] = set()
    for idx, service in enumerate(_assert_list(cfg["services"], "services")):
        _validate_service(service, idx, labels, codes, allow_unknown)
        if service["name"] in names:
            raise ConfigError(f"Duplicate service name: {service['name']}")
        names.add(service["name"])

    return cfg
