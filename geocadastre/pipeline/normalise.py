"""Field aliasing from source-specific property bags to country-agnostic records."""

from __future__ import annotations

from typing import Any, Iterable

from geocadastre.common.constants import WGS84
from geocadastre.common.fields import code_from_href, lookup_first, lookup_first_with_key, safe_float
from geocadastre.common.models import NormalizedRecord, RawFeature, ServiceEndpointConfig
from geocadastre.geo.crs import CRSTransformer

ZONING_LABEL_FIELDS = (
    # Catalunya (MUC)
    "DESC_QUAL_MUC",
    "DESC_QUAL_AJUNT",
    "DESC_CLAS_MUC",
    "DESC_CLAS_AJUNT",
    "CODI_QUAL_MUC",
    "CODI_CLAS_MUC",
    "SISTEMA_URBA_PTP",
    "us_text",
    "qualificacio",
    "planejament",
    "descripcio",
    "descripcio_val",
    # Comunitat Valenciana, Andalucía, Castilla y León
    "zon_suelo",
    "clas_suelo",
    "denominaci",
    "dot_descri",
    "clasificacion",
    "clasificación",
    "categoria",
    "categoría",
    "uso",
    "uso_suelo",
    "clase_suelo",
    "calificacion",
    "calificación",
    "clasificacion_de_suelo",
    "categoria_de_suelo",
    # Germany (B-Plan, FNP, INSPIRE PLU)
    "ArtDerBaulichenNutzung",
    "art_der_baulichen_nutzung",
    "art_der_nutzung",
    "Nutzungsart",
    "nutzungsart",
    "nutzungszweck",
    "Nutzung",
    "nutzung",
    "Zweckbestimmung",
    "zweckbestimmung",
    "Gebietstyp",
    "gebietstyp",
    "Baugebiet",
    "baugebiet",
    "art",
    "Planname",
    "planname",
    "Planbez",
    "planbez",
    "Bebauungsplan",
    "bebauungsplan",
    "BPlan",
    "bplan",
    "Bezeichnung",
    "bezeichnung",
    "officialTitle",
    # Generic
    "nombre",
    "noms_mun",
    "descripcion",
    "description",
    "Name",
    "name",
)
ZONING_CODE_FIELDS = (
    "CODI_QUAL_MUC",
    "CODI_CLAS_MUC",
    "CODI_QUAL_AJUNT",
    "zon_suelo",
    "clas_suelo",
    "hilucsLandUse",
    "specificLandUse",
    "supplementaryRegulation",
    "zoningElement",
    "art",
)
# Groups joined into a fuller zoning description.
COMPOSED_LABEL_GROUPS = (
    ("DESC_QUAL_MUC", "DESC_QUAL_AJUNT"),
    ("DESC_CLAS_MUC", "DESC_CLAS_AJUNT"),
    ("descripcio", "descripcio_val"),
    ("zon_suelo",),
    ("clas_suelo",),
    ("dot_descri",),
)
LABEL_FIELDS = {
    "zoning": ZONING_LABEL_FIELDS,
    "parcel": ("label", "nationalCadastralReference", "localId"),
    "building": ("currentUse", "conditionOfConstruction", "localId"),
    "address": ("designator", "text", "postName"),
}
CODE_FIELDS = {
    "zoning": ZONING_CODE_FIELDS,
    "parcel": ("nationalCadastralReference",),
    "building": ("currentUse",),
    "address": ("postCode",),
}
REFERENCE_FIELDS = (
    "nationalCadastralReference",
    "localId",
    "reference",
    "OBJECTID",
    "objectid",
    "gml_id",
    "id",
)
AREA_FIELDS = ("areaValue", "area", "Shape_Area", "SHAPE_Area", "shape_area", "superficie", "flaeche", "Flaeche")
BUILDING_FIELDS = {
    "current_use": ("currentUse",),
    "condition": ("conditionOfConstruction",),
    "floors_above_ground": ("numberOfFloorsAboveGround",),
    "number_of_dwellings": ("numberOfDwellings",),
    "number_of_building_units": ("numberOfBuildingUnits",),
    "official_area_m2": ("value", "officialAreaValue"),
    "beginning": ("beginning", "dateOfConstruction"),
}
ADDRESS_FIELDS = {
    "designator": ("designator",),
    "thoroughfare": ("text", "thoroughfareName", "name"),
    "post_code": ("postCode",),
    "specification": ("specification",),
}
# Values that arrive as code-list URIs rather than plain text.
CODE_LIST_KEYS = {"current_use", "condition", "specification"}
NUMERIC_KEYS = {"floors_above_ground", "number_of_dwellings", "number_of_building_units", "official_area_m2"}
SAMPLE_PROPERTY_LIMIT = 25


def is_geometry_value(value: Any) -> bool:
    return isinstance(value, dict) and "type" in value and "coordinates" in value


def sample_properties(properties: dict[str, Any], limit: int = SAMPLE_PROPERTY_LIMIT) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(properties):
        value = properties[key]
        if isinstance(value, (dict, list)):
            continue
        out[key] = value
        if len(out) >= limit:
            break
    return out


def compose_label(properties: dict[str, Any], groups: Iterable[tuple[str, ...]] = COMPOSED_LABEL_GROUPS) -> str | None:
    parts: list[str] = []
    for group in groups:
        value = lookup_first(properties, group)
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in parts:
            parts.append(text)
    if len(parts) < 2:
        return None
    return " | ".join(parts)


def feature_to_wgs84(feature: RawFeature, transformer: CRSTransformer) -> tuple[RawFeature, list[str]]:
    """Reproject geometry and geometry-valued properties; keep them as-is on failure."""
    swap = feature.axis_order == "yx"
    if feature.crs == WGS84 and not swap:
        return feature, []

    notes: list[str] = []
    geometry = feature.geometry
    crs = WGS84
    if feature.geometry is not None:
        transformed = transformer.transform_geometry(feature.geometry, feature.crs, WGS84, swap_axes=swap)
        if transformed is None:
            notes.append(f"Geometry left in {feature.crs}; reprojection to {WGS84} unavailable")
            crs = feature.crs
        else:
            geometry = transformed

    properties = dict(feature.properties)
    if crs == WGS84:
        for key, value in feature.properties.items():
            if is_geometry_value(value):
                transformed_value = transformer.transform_geometry(value, feature.crs, WGS84, swap_axes=swap)
                if transformed_value is not None:
                    properties[key] = transformed_value
    return (
        RawFeature(
            geometry=geometry,
            properties=properties,
            id=feature.id,
            crs=crs,
            axis_order=feature.axis_order if crs != WGS84 else "xy",
        ),
        notes,
    )


def normalize_feature(
    feature: RawFeature,
    endpoint: ServiceEndpointConfig,
    *,
    service_url: str | None = None,
    notes: Iterable[str] = (),
) -> NormalizedRecord:
    properties = feature.properties
    label_fields = endpoint.label_fields or LABEL_FIELDS.get(endpoint.role, ZONING_LABEL_FIELDS)
    picked_field, label = lookup_first_with_key(properties, label_fields)
    reference = lookup_first(properties, REFERENCE_FIELDS) or feature.id
    code = lookup_first(properties, CODE_FIELDS.get(endpoint.role, ()))

    record_notes = [note for note in notes if note]
    if endpoint.notes and endpoint.notes not in record_notes:
        record_notes.insert(0, endpoint.notes)

    return NormalizedRecord(
        category=endpoint.category,
        role=endpoint.role,
        reference_id=str(reference) if reference is not None and not isinstance(reference, dict) else None,
        label=str(label).strip() if label is not None else None,
        area_m2=safe_float(lookup_first(properties, AREA_FIELDS)),
        classification_code=code_from_href(code) if code is not None and not isinstance(code, dict) else None,
        geometry=feature.geometry if feature.crs == WGS84 else None,
        source=endpoint.source or endpoint.name,
        service_url=service_url or endpoint.base_url,
        notes=record_notes,
        picked_field=picked_field,
        properties=dict(properties),
    )


def summarize_record(record: NormalizedRecord, field_map: dict[str, tuple[str, ...]]) -> dict[str, Any]:
    """Flat payload for a supplemental record (building or address)."""
    out: dict[str, Any] = {"reference": record.reference_id, "label": record.label}
    for key, aliases in field_map.items():
        value = lookup_first(record.properties, aliases)
        if isinstance(value, dict):
            value = None
        if key in CODE_LIST_KEYS:
            value = code_from_href(value)
        elif key in NUMERIC_KEYS:
            value = safe_float(value)
        out[key] = value
    out["source"] = record.source
    return out
