import pytest

from geocadastre.common.models import GeoPoint
from geocadastre.geo.crs import (
    CRSTransformer,
    bbox_for_crs,
    bbox_strictly_contains,
    flip_axes,
    format_bbox,
    geographic_bbox,
    is_lat_first_srs_name,
    normalize_crs_code,
    resolve_query_crs,
    utm_crs_for_longitude,
    utm_zone_for_longitude,
    widened_sizes,
)

IBERIA_ZONES = (29, 30, 31)


@pytest.mark.parametrize(("longitude", "zone"), [(-7.0, 29), (-3.0, 30), (2.0, 31)])
def test_utm_zone_follows_longitude(longitude, zone):
    assert utm_zone_for_longitude(longitude, IBERIA_ZONES) == zone


def test_utm_zone_is_clamped_into_allowed_zones():
    # Canary Islands longitudes fall in zone 28.
    assert utm_zone_for_longitude(-16.5, IBERIA_ZONES) == 29
    assert utm_zone_for_longitude(4.3, IBERIA_ZONES) == 31


def test_utm_crs_uses_etrs89_codes_in_europe():
    assert utm_crs_for_longitude(-3.0, IBERIA_ZONES) == "EPSG:25830"
    assert utm_crs_for_longitude(13.4, (32, 33)) == "EPSG:25833"
    assert utm_crs_for_longitude(-75.0) == "EPSG:32618"


def test_resolve_query_crs_expands_utm_token():
    point = GeoPoint(2.1734, 41.3851)
    assert resolve_query_crs("UTM", point, IBERIA_ZONES) == "EPSG:25831"
    assert resolve_query_crs("urn:ogc:def:crs:EPSG::25830", point) == "EPSG:25830"


def test_normalize_crs_code_spellings():
    assert normalize_crs_code("urn:ogc:def:crs:EPSG::4326") == "EPSG:4326"
    assert normalize_crs_code("http://www.opengis.net/def/crs/EPSG/0/25831") == "EPSG:25831"
    assert normalize_crs_code("http://www.opengis.net/gml/srs/epsg.xml#4258") == "EPSG:4258"
    assert normalize_crs_code("http://www.opengis.net/def/crs/OGC/1.3/CRS84") == "EPSG:4326"
    assert normalize_crs_code(None) is None


def test_lat_first_only_for_urn_geographic_names():
    assert is_lat_first_srs_name("urn:ogc:def:crs:EPSG::4326")
    assert not is_lat_first_srs_name("EPSG:4326")
    assert not is_lat_first_srs_name("urn:ogc:def:crs:EPSG::25831")


@pytest.mark.parametrize(
    ("longitude", "latitude", "crs"),
    [(2.1734, 41.3851, "EPSG:25831"), (-3.7038, 40.4168, "EPSG:25830"), (13.405, 52.52, "EPSG:25833")],
)
def test_forward_then_inverse_round_trips(longitude, latitude, crs):
    transformer = CRSTransformer()
    point = GeoPoint(longitude, latitude)

    projected = transformer.forward(point, crs)
    assert projected is not None
    assert projected.srs_id == crs

    back = transformer.inverse(projected, crs)
    assert back is not None
    assert back.longitude == pytest.approx(longitude, abs=1e-6)
    assert back.latitude == pytest.approx(latitude, abs=1e-6)


def test_unsupported_crs_returns_sentinel():
    transformer = CRSTransformer()
    assert transformer.forward(GeoPoint(2.0, 41.0), "EPSG:999999") is None
    assert not transformer.supports("EPSG:999999")


def test_bbox_for_crs_falls_back_to_geographic():
    point = GeoPoint(2.1734, 41.3851)
    bbox, crs, notes = bbox_for_crs(point, 100, "EPSG:999999", CRSTransformer())

    assert crs == "EPSG:4326"
    assert bbox == geographic_bbox(point, 100)
    assert notes


def test_bbox_for_crs_projected_is_centred_on_point():
    transformer = CRSTransformer()
    point = GeoPoint(2.1734, 41.3851)
    bbox, crs, notes = bbox_for_crs(point, 50, "EPSG:25831", transformer)
    projected = transformer.forward(point, "EPSG:25831")

    assert crs == "EPSG:25831"
    assert notes == []
    assert bbox[2] - bbox[0] == pytest.approx(100)
    assert (bbox[0] + bbox[2]) / 2 == pytest.approx(projected.longitude)


def test_widened_boxes_strictly_contain_previous():
    point = GeoPoint(-3.7038, 40.4168)
    sizes = widened_sizes(100, 2, 3)
    boxes = [geographic_bbox(point, size) for size in sizes]

    assert sizes == [100, 200, 400, 800]
    for inner, outer in zip(boxes, boxes[1:]):
        assert bbox_strictly_contains(outer, inner)


def test_widened_sizes_rejects_non_growing_factor():
    with pytest.raises(ValueError):
        widened_sizes(100, 1.0, 2)


def test_flip_axes_and_format_bbox():
    assert flip_axes((1.0, 2.0, 3.0, 4.0)) == (2.0, 1.0, 4.0, 3.0)
    assert format_bbox((1.5, 2.0, 3.25, 4.0)) == "1.5,2,3.25,4"
    assert format_bbox((1.0, 2.0, 3.0, 4.0), "EPSG:25831") == "1,2,3,4,EPSG:25831"


def test_transform_geometry_swaps_lat_first_coordinates():
    transformer = CRSTransformer()
    geometry = {"type": "Point", "coordinates": [41.3851, 2.1734]}

    out = transformer.transform_geometry(geometry, "EPSG:4326", "EPSG:4326", swap_axes=True)

    assert out == {"type": "Point", "coordinates": [2.1734, 41.3851]}
