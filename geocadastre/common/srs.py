"""Spatial reference identifiers as servers and callers spell them."""

from __future__ import annotations

import re

from geocadastre.common.constants import WGS84

GEOGRAPHIC_CODES = {"EPSG:4326", "EPSG:4258"}

_EPSG_PATTERNS = (
    re.compile(r"^EPSG:(\d+)$", re.IGNORECASE),
    re.compile(r"^urn:ogc:def:crs:EPSG:[\d.]*:(\d+)$", re.IGNORECASE),
    re.compile(r"^https?://www\.opengis\.net/def/crs/EPSG/\d+/(\d+)$", re.IGNORECASE),
    re.compile(r"^https?://www\.opengis\.net/gml/srs/epsg\.xml#(\d+)$", re.IGNORECASE),
)
_CRS84_PATTERN = re.compile(r"(^|[:/])CRS:?84$", re.IGNORECASE)


def normalize_crs_code(value: str | None) -> str | None:
    """Map the srsName spellings servers use onto ``EPSG:<code>``."""
    if not value:
        return None
    text = value.strip()
    if _CRS84_PATTERN.search(text):
        return WGS84
    for pattern in _EPSG_PATTERNS:
        match = pattern.match(text)
        if match:
            return f"EPSG:{int(match.group(1))}"
    return text


def is_geographic(crs: str | None) -> bool:
    return normalize_crs_code(crs) in GEOGRAPHIC_CODES
