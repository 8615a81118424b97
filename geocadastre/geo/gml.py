"""Namespace-tolerant decoding of GML feature collections."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Any, Iterator

from geocadastre.common.constants import WGS84
from geocadastre.common.models import RawFeature
from geocadastre.geo.crs import is_lat_first_srs_name, normalize_crs_code

# Logical tag -> local names servers use for it.
TAG_ALIASES: dict[str, tuple[str, ...]] = {
    "member": ("member", "featureMember"),
    "members": ("featureMembers", "members"),
    "collection": ("FeatureCollection", "SimpleFeatureCollection"),
    "exterior": ("exterior", "outerBoundaryIs"),
    "interior": ("interior", "innerBoundaryIs"),
    "pos_list": ("posList",),
    "pos": ("pos",),
    "coordinates": ("coordinates",),
    "point": ("Point",),
    "polygon": ("Polygon", "PolygonPatch"),
    "surface": ("Surface",),
    "multi_surface": ("MultiSurface", "MultiPolygon", "CompositeSurface"),
    "line": ("LineString", "Curve", "LineStringSegment"),
    "exception": ("ExceptionReport", "ServiceExceptionReport"),
    "feature_type": ("FeatureType",),
    "name": ("Name",),
}
GEOMETRY_TAGS = frozenset(
    TAG_ALIASES["point"]
    + TAG_ALIASES["polygon"]
    + TAG_ALIASES["surface"]
    + TAG_ALIASES["multi_surface"]
    + TAG_ALIASES["line"]
)
GEOMETRY_PROPERTY_NAMES = frozenset({"geometry", "the_geom", "geom", "msGeometry", "shape", "Shape", "SHAPE", "geometria"})
MAX_PROPERTY_DEPTH = 4

_PREFIX_DECL = re.compile(r"\s+xmlns(:[\w.-]+)?\s*=\s*(\"[^\"]*\"|'[^']*')")
_PREFIXED_TAG = re.compile(r"<(/?)[A-Za-z_][\w.-]*:")
_PREFIXED_ATTR = re.compile(r"(\s)[A-Za-z_][\w.-]*:([\w.-]+\s*=)")
_XML_ENCODING = re.compile(rb"\s*<\?xml[^>]*?\bencoding\s*=\s*[\"']([A-Za-z0-9._-]+)[\"']")


def local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    if "}" in tag:
        tag = tag.split("}", 1)[1]
    if ":" in tag:
        tag = tag.split(":", 1)[1]
    return tag


def is_tag(element: ET.Element, logical: str) -> bool:
    return local_name(element.tag) in TAG_ALIASES[logical]


def _attribute(element: ET.Element, name: str) -> str | None:
    for key, value in element.attrib.items():
        if local_name(key) == name:
            return value
    return None


def _strip_prefixes(text: str) -> str:
    text = _PREFIX_DECL.sub("", text)
    text = _PREFIXED_TAG.sub(r"<\1", text)
    return _PREFIXED_ATTR.sub(r"\1\2", text)


def declared_encoding(document: bytes) -> str:
    match = _XML_ENCODING.match(document)
    return match.group(1).decode("ascii") if match else "utf-8"


def _decode(document: bytes) -> str:
    try:
        return document.decode(declared_encoding(document), errors="replace")
    except LookupError:
        return document.decode("utf-8", errors="replace")


def _parse_root(xml_text: str | bytes) -> ET.Element | None:
    if not xml_text or not xml_text.strip():
        return None
    document = xml_text.strip()
    try:
        return ET.fromstring(document)
    except ET.ParseError:
        pass
    # Some servers emit prefixes they never declare.
    text = _decode(document) if isinstance(document, bytes) else document
    try:
        return ET.fromstring(_strip_prefixes(text))
    except ET.ParseError:
        return None


def parse_pos_list(text: str | None, dimension: int = 2) -> list[list[float]]:
    """Split ``"x1 y1 x2 y2 ..."`` into positions, dropping an unpaired tail."""
    if not text:
        return []
    values = [float(value) for value in text.split()]
    dimension = max(2, dimension)
    count = len(values) // dimension
    return [values[i * dimension : i * dimension + 2] for i in range(count)]


def _parse_coordinates(text: str | None) -> list[list[float]]:
    if not text:
        return []
    positions = []
    for tuple_text in text.split():
        parts = [part for part in tuple_text.split(",") if part]
        if len(parts) >= 2:
            positions.append([float(parts[0]), float(parts[1])])
    return positions


def _dimension(element: ET.Element, inherited: int) -> int:
    value = _attribute(element, "srsDimension")
    if value is None:
        return inherited
    try:
        return int(value)
    except ValueError:
        return inherited


def _find_first(element: ET.Element, logical: str) -> ET.Element | None:
    for candidate in element.iter():
        if candidate is not element and is_tag(candidate, logical):
            return candidate
    return None


def _positions(element: ET.Element, dimension: int) -> list[list[float]]:
    pos_list = _find_first(element, "pos_list")
    if pos_list is not None:
        return parse_pos_list(pos_list.text, _dimension(pos_list, dimension))
    single = [candidate for candidate in element.iter() if is_tag(candidate, "pos")]
    if single:
        out = []
        for pos in single:
            out.extend(parse_pos_list(pos.text, _dimension(pos, dimension))[:1])
        return out
    coordinates = _find_first(element, "coordinates")
    if coordinates is not None:
        return _parse_coordinates(coordinates.text)
    return []


class GMLFeatureParser:
    """Decode GML ``FeatureCollection`` documents into ``RawFeature`` values.

    Tags are matched by local name through ``TAG_ALIASES`` so ``wfs:member``,
    ``gml:featureMember`` and a bare ``member`` are equivalent. Coordinates
    are kept in the order the document lists them; ``RawFeature.axis_order``
    records when that order is latitude first. Malformed or unrecognised
    documents produce an empty list.
    """

    def __init__(self, default_crs: str = WGS84) -> None:
        self.default_crs = default_crs

    def parse(self, xml_text: str | bytes, default_crs: str | None = None) -> list[RawFeature]:
        root = _parse_root(xml_text)
        if root is None or is_tag(root, "exception"):
            return []

        fallback_crs = default_crs or self.default_crs
        features: list[RawFeature] = []
        for element in self._feature_elements(root):
            features.append(self._feature_from_element(element, fallback_crs))
        return features

    def _feature_elements(self, container: ET.Element) -> Iterator[ET.Element]:
        for child in container:
            if not (is_tag(child, "member") or is_tag(child, "members")):
                continue
            for item in child:
                if is_tag(item, "collection"):
                    yield from self._feature_elements(item)
                else:
                    yield item

    def _feature_from_element(self, element: ET.Element, fallback_crs: str) -> RawFeature:
        properties: dict[str, Any] = {}
        geometry: dict[str, Any] | None = None
        geometry_srs: str | None = None
        geometry_is_named = False
        geometry_name: str | None = None
        nested: list[tuple[dict[str, Any], str | None]] = []

        for prop in element:
            name = local_name(prop.tag)
            geometry_element = next((child for child in prop if local_name(child.tag) in GEOMETRY_TAGS), None)
            if geometry_element is not None:
                parsed = self.parse_geometry(geometry_element)
                if parsed is None:
                    continue
                srs = _attribute(geometry_element, "srsName")
                named = name in GEOMETRY_PROPERTY_NAMES
                if geometry is None or (named and not geometry_is_named):
                    if geometry is not None and geometry_name is not None:
                        properties.setdefault(geometry_name, geometry)
                    geometry, geometry_srs, geometry_is_named = parsed, srs, named
                    geometry_name = name
                else:
                    properties.setdefault(name, parsed)
                continue
            if len(prop) == 0:
                value = (prop.text or "").strip() or _attribute(prop, "href")
                if value:
                    properties.setdefault(name, value)
                continue
            self._flatten(prop, name, properties, nested, depth=1)

        if geometry is None and nested:
            geometry, geometry_srs = nested[0]

        srs_name = geometry_srs or _attribute(element, "srsName")
        crs = normalize_crs_code(srs_name) or fallback_crs
        feature_id = _attribute(element, "id") or _attribute(element, "fid")
        return RawFeature(
            geometry=geometry,
            properties=properties,
            id=feature_id,
            crs=crs,
            axis_order="yx" if is_lat_first_srs_name(srs_name) else "xy",
        )

    def _flatten(
        self,
        element: ET.Element,
        owner: str,
        properties: dict[str, Any],
        nested: list[tuple[dict[str, Any], str | None]],
        depth: int,
    ) -> None:
        if depth > MAX_PROPERTY_DEPTH:
            return
        for child in element:
            name = local_name(child.tag)
            if name in GEOMETRY_TAGS:
                parsed = self.parse_geometry(child)
                if parsed is not None:
                    nested.append((parsed, _attribute(child, "srsName")))
                    properties.setdefault(owner, parsed)
                continue
            if len(child) == 0:
                value = (child.text or "").strip() or _attribute(child, "href")
                if value:
                    properties.setdefault(name, value)
                continue
            self._flatten(child, owner, properties, nested, depth + 1)

    def parse_geometry(self, element: ET.Element, dimension: int = 2) -> dict[str, Any] | None:
        dimension = _dimension(element, dimension)
        try:
            if is_tag(element, "point"):
                positions = _positions(element, dimension)
                if not positions:
                    return None
                return {"type": "Point", "coordinates": positions[0]}
            if is_tag(element, "polygon"):
                rings = self._polygon_rings(element, dimension)
                return {"type": "Polygon", "coordinates": rings} if rings else None
            if is_tag(element, "surface") or is_tag(element, "multi_surface"):
                polygons = [
                    rings
                    for candidate in element.iter()
                    if is_tag(candidate, "polygon")
                    for rings in [self._polygon_rings(candidate, _dimension(candidate, dimension))]
                    if rings
                ]
                if not polygons:
                    return None
                if len(polygons) == 1:
                    return {"type": "Polygon", "coordinates": polygons[0]}
                return {"type": "MultiPolygon", "coordinates": polygons}
            if is_tag(element, "line"):
                positions = _positions(element, dimension)
                return {"type": "LineString", "coordinates": positions} if len(positions) >= 2 else None
        except ValueError:
            return None
        return None

    def _polygon_rings(self, polygon: ET.Element, dimension: int) -> list[list[list[float]]]:
        exterior = next((child for child in polygon if is_tag(child, "exterior")), None)
        if exterior is None:
            return []
        shell = _positions(exterior, dimension)
        if len(shell) < 3:
            return []
        rings = [shell]
        for interior in (child for child in polygon if is_tag(child, "interior")):
            hole = _positions(interior, dimension)
            if len(hole) >= 3:
                rings.append(hole)
        return rings


def parse_capabilities_type_names(xml_text: str | bytes) -> list[str]:
    """Feature type names advertised by a WFS GetCapabilities document."""
    root = _parse_root(xml_text)
    if root is None:
        return []
    names: list[str] = []
    for feature_type in root.iter():
        if not is_tag(feature_type, "feature_type"):
            continue
        name = next((child for child in feature_type if is_tag(child, "name")), None)
        if name is not None and name.text and name.text.strip():
            names.append(name.text.strip())
    return names
