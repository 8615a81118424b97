import pytest

from geocadastre.common.models import RawFeature, ServiceEndpointConfig
from geocadastre.geo.crs import CRSTransformer
from geocadastre.pipeline.normalise import (
    BUILDING_FIELDS,
    compose_label,
    feature_to_wgs84,
    normalize_feature,
    sample_properties,
    summarize_record,
)

ZONING_ENDPOINT = ServiceEndpointConfig(
    name="catalunya_muc",
    category="zoning",
    role="zoning",
    protocol="wfs",
    base_url="https://example.test/wfs",
    source="Generalitat de Catalunya WFS",
    notes="No legal validity",
)
PARCEL_ENDPOINT = ServiceEndpointConfig(
    name="es_cadastre_parcels",
    category="cadastral",
    role="parcel",
    protocol="wfs",
    base_url="https://example.test/wfsCP",
)


def test_zoning_label_uses_first_alias_in_priority_order():
    feature = RawFeature(
        geometry=None,
        properties={"uso_suelo": "Residencial", "DESC_CLAS_MUC": "Sòl urbà", "nombre": "x"},
        id="z.1",
    )

    record = normalize_feature(feature, ZONING_ENDPOINT, service_url="https://example.test/wfs?x=1")

    assert record.label == "Sòl urbà"
    assert record.picked_field == "DESC_CLAS_MUC"
    assert record.reference_id == "z.1"
    assert record.service_url == "https://example.test/wfs?x=1"
    assert record.notes == ["No legal validity"]
    assert record.source == "Generalitat de Catalunya WFS"


def test_german_label_and_code_list_href():
    feature = RawFeature(
        geometry=None,
        properties={
            "Planname": "Bebauungsplan 4-12",
            "hilucsLandUse": "http://inspire.ec.europa.eu/codelist/HILUCSValue/5_ResidentialUse",
        },
    )

    record = normalize_feature(feature, ZONING_ENDPOINT)

    assert record.label == "Bebauungsplan 4-12"
    assert record.classification_code == "5_ResidentialUse"
    assert record.service_url == "https://example.test/wfs"


def test_parcel_record_fields():
    feature = RawFeature(
        geometry={"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]},
        properties={"nationalCadastralReference": "9872023VH5797S", "areaValue": "1234.5", "label": "23"},
        id="ES.SDGC.CP.9872023VH5797S",
    )

    record = normalize_feature(feature, PARCEL_ENDPOINT)

    assert record.reference_id == "9872023VH5797S"
    assert record.label == "23"
    assert record.area_m2 == 1234.5
    assert record.geometry == feature.geometry
    assert record.source == "es_cadastre_parcels"


def test_geometry_outside_wgs84_is_not_reported():
    feature = RawFeature(geometry={"type": "Point", "coordinates": [430000, 4581000]}, properties={}, crs="EPSG:25831")
    assert normalize_feature(feature, PARCEL_ENDPOINT).geometry is None


def test_compose_label_joins_description_parts():
    props = {"DESC_QUAL_MUC": "Zona residencial", "DESC_CLAS_MUC": "Sòl urbà", "CODI_QUAL_MUC": "13b"}
    assert compose_label(props) == "Zona residencial | Sòl urbà"
    assert compose_label({"DESC_QUAL_MUC": "only one"}) is None


def test_sample_properties_skips_nested_values_and_sorts():
    props = {"b": 2, "a": 1, "geom": {"type": "Point"}, "list": [1, 2]}
    assert sample_properties(props) == {"a": 1, "b": 2}
    assert len(sample_properties({f"k{i:02d}": i for i in range(40)})) == 25


def test_feature_to_wgs84_reprojects_geometry_and_geometry_properties():
    transformer = CRSTransformer()
    feature = RawFeature(
        geometry={"type": "Point", "coordinates": [430050.0, 4581050.0]},
        properties={"referencePoint": {"type": "Point", "coordinates": [430050.0, 4581050.0]}, "name": "x"},
        crs="EPSG:25831",
    )

    out, notes = feature_to_wgs84(feature, transformer)

    assert notes == []
    assert out.crs == "EPSG:4326"
    lon, lat = out.geometry["coordinates"]
    assert lon == pytest.approx(2.16, abs=0.05)
    assert lat == pytest.approx(41.38, abs=0.05)
    assert out.properties["referencePoint"]["coordinates"] == out.geometry["coordinates"]
    assert out.properties["name"] == "x"


def test_feature_to_wgs84_swaps_lat_first_coordinates():
    feature = RawFeature(
        geometry={"type": "Point", "coordinates": [41.38, 2.17]},
        properties={},
        crs="EPSG:4326",
        axis_order="yx",
    )

    out, _ = feature_to_wgs84(feature, CRSTransformer())

    assert out.geometry["coordinates"] == [2.17, 41.38]
    assert out.axis_order == "xy"


def test_feature_to_wgs84_unknown_crs_keeps_geometry_and_notes():
    feature = RawFeature(geometry={"type": "Point", "coordinates": [1.0, 2.0]}, properties={}, crs="EPSG:999999")

    out, notes = feature_to_wgs84(feature, CRSTransformer())

    assert out.geometry == feature.geometry
    assert out.crs == "EPSG:999999"
    assert notes and "EPSG:999999" in notes[0]


def test_summarize_building_record():
    feature = RawFeature(
        geometry=None,
        properties={
            "localId": "9872023VH5797S",
            "currentUse": "http://inspire.ec.europa.eu/codelist/CurrentUseValue/1_residential",
            "conditionOfConstruction": "functional",
            "numberOfFloorsAboveGround": "5",
            "value": "812",
        },
    )
    endpoint = ServiceEndpointConfig(
        name="es_cadastre_buildings", category="cadastral", role="building", protocol="wfs", base_url="x"
    )

    summary = summarize_record(normalize_feature(feature, endpoint), BUILDING_FIELDS)

    assert summary["reference"] == "9872023VH5797S"
    assert summary["current_use"] == "1_residential"
    assert summary["condition"] == "functional"
    assert summary["floors_above_ground"] == 5.0
    assert summary["official_area_m2"] == 812.0
    assert summary["number_of_dwellings"] is None
