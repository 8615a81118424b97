from __future__ import annotations

from pathlib import Path

import pytest

from geocadastre.common.errors import ConfigError, InvalidCoordinateError
from geocadastre.common.http import HttpRequestError
from geocadastre.common.models import GeoPoint
from geocadastre.geo.crs import CRSTransformer
from geocadastre.pipeline.resolver import PointResolver
from geocadastre.services.client import ProtocolClient
from geocadastre.services.registry import ServiceRegistry
from geocadastre.services.router import RegionRouter

CONFIG_DIR = Path("config")
BARCELONA = GeoPoint(2.1734, 41.3851)
EMPTY_GML = '<wfs:FeatureCollection xmlns:wfs="http://www.opengis.net/wfs/2.0" numberReturned="0"/>'
EMPTY_COLLECTION = {"type": "FeatureCollection", "features": []}

PARCEL_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<FeatureCollection xmlns="http://www.opengis.net/wfs/2.0"
    xmlns:gml="http://www.opengis.net/gml/3.2"
    xmlns:cp="http://inspire.ec.europa.eu/schemas/cp/4.0"
    xmlns:base="http://inspire.ec.europa.eu/schemas/base/3.3">
  <member>
    <cp:CadastralParcel gml:id="ES.SDGC.CP.9872023VH5797S">
      <cp:areaValue uom="m2">1234.5</cp:areaValue>
      <cp:geometry>
        <gml:Polygon gml:id="P1" srsName="http://www.opengis.net/def/crs/EPSG/0/25831">
          <gml:exterior>
            <gml:LinearRing>
              <gml:posList>{ring}</gml:posList>
            </gml:LinearRing>
          </gml:exterior>
        </gml:Polygon>
      </cp:geometry>
      <cp:inspireId>
        <base:Identifier>
          <base:localId>9872023VH5797S</base:localId>
        </base:Identifier>
      </cp:inspireId>
      <cp:label>23</cp:label>
      <cp:nationalCadastralReference>9872023VH5797S</cp:nationalCadastralReference>
      <cp:referencePoint>
        <gml:Point gml:id="RP1" srsName="http://www.opengis.net/def/crs/EPSG/0/25831">
          <gml:pos>{x} {y}</gml:pos>
        </gml:Point>
      </cp:referencePoint>
    </cp:CadastralParcel>
  </member>
</FeatureCollection>
"""

BUILDING_GML = """<?xml version="1.0" encoding="UTF-8"?>
<FeatureCollection xmlns="http://www.opengis.net/wfs/2.0"
    xmlns:gml="http://www.opengis.net/gml/3.2"
    xmlns:bu="http://inspire.ec.europa.eu/schemas/bu-ext2d/2.0"
    xmlns:base="http://inspire.ec.europa.eu/schemas/base/3.3">
  <member>
    <bu:Building gml:id="ES.SDGC.BU.9872023VH5797S">
      <base:localId>9872023VH5797S</base:localId>
      <bu:currentUse>1_residential</bu:currentUse>
      <bu:numberOfFloorsAboveGround>5</bu:numberOfFloorsAboveGround>
    </bu:Building>
  </member>
</FeatureCollection>
"""


class FakeHttpClient:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def get_json(self, url, **kwargs):
        self.calls.append(("json", url, kwargs))
        return self.responder("json", url, kwargs.get("params") or {})

    def get_xml(self, url, **kwargs):
        self.calls.append(("text", url, kwargs))
        return self.responder("text", url, kwargs.get("params") or {})


def always_empty(kind, _url, _params):
    return EMPTY_COLLECTION if kind == "json" else EMPTY_GML


@pytest.fixture(scope="module")
def registry() -> ServiceRegistry:
    return ServiceRegistry.from_config_dir(CONFIG_DIR)


def _resolver(registry: ServiceRegistry, http: FakeHttpClient) -> PointResolver:
    client = ProtocolClient(http)
    return PointResolver(registry, RegionRouter(registry), client)


def _parcel_gml_around(point: GeoPoint) -> str:
    projected = CRSTransformer().forward(point, "EPSG:25831")
    x, y = projected.longitude, projected.latitude
    corners = [(x - 20, y - 20), (x + 20, y - 20), (x + 20, y + 20), (x - 20, y + 20), (x - 20, y - 20)]
    ring = " ".join(f"{cx:.3f} {cy:.3f}" for cx, cy in corners)
    return PARCEL_TEMPLATE.format(ring=ring, x=f"{x:.3f}", y=f"{y + 5:.3f}")


@pytest.mark.integration
def test_zero_features_everywhere_yields_zoning_sentinel(registry):
    http = FakeHttpClient(always_empty)

    payload = _resolver(registry, http).resolve(BARCELONA, "zoning")

    assert payload["feature_count"] == 0
    assert payload["label"] is None
    assert payload["ccaa"] == "Catalunya"
    assert payload["country"] == "ES"
    assert payload["service_type"] == "WFS"
    assert payload["source"] == "Generalitat de Catalunya WFS"
    assert payload["notes"]
    assert "catalunya_muc" in payload["notes"]
    assert http.calls


@pytest.mark.integration
def test_zero_features_everywhere_yields_cadastral_sentinel(registry):
    http = FakeHttpClient(always_empty)

    payload = _resolver(registry, http).resolve(BARCELONA, "cadastral")

    assert payload["feature_count"] == 0
    assert payload["cadastral_reference"] is None
    assert payload["utm_crs"] == "EPSG:25831"
    assert payload["notes"]
    assert payload["contains_point"] is False


@pytest.mark.integration
def test_transport_failures_degrade_to_sentinel(registry):
    def broken(*_args):
        raise HttpRequestError("HTTP timeout")

    payload = _resolver(registry, FakeHttpClient(broken)).resolve(BARCELONA, "zoning")

    assert payload["feature_count"] == 0
    assert payload["notes"]


@pytest.mark.integration
def test_point_outside_every_region_yields_unknown_sentinel(registry):
    http = FakeHttpClient(always_empty)
    resolver = _resolver(registry, http)

    zoning = resolver.resolve(GeoPoint(-40.0, 10.0), "zoning")
    cadastral = resolver.resolve(GeoPoint(-40.0, 10.0), "cadastral")

    assert zoning["feature_count"] == 0
    assert zoning["service_type"] == "unknown"
    assert zoning["notes"].startswith("Could not determine region for point")
    assert cadastral["feature_count"] == 0
    assert cadastral["notes"].startswith("Could not determine country for point")
    assert http.calls == []


@pytest.mark.integration
def test_region_without_zoning_service_yields_sentinel(registry):
    payload = _resolver(registry, FakeHttpClient(always_empty)).resolve(GeoPoint(9.73, 52.37), "zoning")

    assert payload["state"] == "Niedersachsen"
    assert payload["feature_count"] == 0
    assert payload["notes"] == "No zoning service configured for Niedersachsen"


@pytest.mark.integration
def test_atom_only_region_explains_itself(registry):
    http = FakeHttpClient(always_empty)

    payload = _resolver(registry, http).resolve(GeoPoint(-3.7038, 40.4168), "zoning")

    assert payload["ccaa"] == "Madrid"
    assert payload["service_type"] == "ATOM"
    assert payload["feature_count"] == 0
    assert payload["notes"] == "Primary access via ATOM feed, not WFS"
    assert http.calls == []


@pytest.mark.integration
def test_zoning_feature_is_normalised_into_payload(registry):
    collection = {
        "type": "FeatureCollection",
        "features": [
            {
                "id": "MUC_QUALIFICACIONS.42",
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [[[2.17, 41.38], [2.18, 41.38], [2.18, 41.39], [2.17, 41.39], [2.17, 41.38]]],
                },
                "properties": {
                    "DESC_QUAL_MUC": "Zona residencial",
                    "DESC_CLAS_MUC": "Sòl urbà",
                    "CODI_QUAL_MUC": "13b",
                },
            }
        ],
    }
    http = FakeHttpClient(lambda kind, _url, _params: collection if kind == "json" else EMPTY_GML)

    payload = _resolver(registry, http).resolve(BARCELONA, "zoning")

    assert payload["label"] == "Zona residencial | Sòl urbà"
    assert payload["picked_field"] == "DESC_QUAL_MUC"
    assert payload["zoning_code"] == "13b"
    assert payload["typename"] == "PLANEJAMENT:MUC_QUALIFICACIONS"
    assert payload["feature_id"] == "MUC_QUALIFICACIONS.42"
    assert payload["feature_count"] == 1
    assert payload["sample_properties"]["CODI_QUAL_MUC"] == "13b"
    assert "No legal validity" in payload["notes"]
    assert payload["service_url"].startswith("https://sig.gencat.cat/ows/PLANEJAMENT/wfs?")


@pytest.mark.integration
def test_cadastral_parcel_with_supplemental_lookups(registry):
    parcel_gml = _parcel_gml_around(BARCELONA)

    def responder(kind, url, params):
        if "wfsCP" in url:
            return parcel_gml
        if "wfsBU" in url:
            return BUILDING_GML
        raise HttpRequestError("HTTP status: 503")

    payload = _resolver(registry, FakeHttpClient(responder)).resolve(BARCELONA, "cadastral")

    assert payload["cadastral_reference"] == "9872023VH5797S"
    assert payload["inspire_id"] == "9872023VH5797S"
    assert payload["label"] == "23"
    assert payload["parcel_area_m2"] == 1234.5
    assert payload["contains_point"] is True
    assert payload["feature_count"] == 1
    assert payload["utm_crs"] == "EPSG:25831"
    assert payload["geometry"]["type"] == "Polygon"
    lon, lat = payload["geometry"]["coordinates"][0][0]
    assert lon == pytest.approx(2.1734, abs=0.01)
    assert lat == pytest.approx(41.3851, abs=0.01)
    assert payload["distance_meters"] == pytest.approx(5.0, abs=1.0)
    assert payload["building"]["reference"] == "9872023VH5797S"
    assert payload["building"]["floors_above_ground"] == 5.0
    assert payload["address"] is None
    assert "No address found near the parcel" in payload["notes"]
    assert "not a legal certificate" in payload["notes"]
    assert "typeNames=CP.CadastralParcel" in payload["service_url"]
    assert payload["map_image_url"].startswith("http://ovc.catastro.meh.es/cartografia/INSPIRE/spadgcwms.aspx?")
    assert "REQUEST=GetMap" in payload["map_image_url"]


@pytest.mark.integration
def test_invalid_coordinates_are_rejected_before_any_request():
    with pytest.raises(InvalidCoordinateError):
        GeoPoint.from_values(2.0, 95.0)


@pytest.mark.integration
def test_unknown_category_is_a_config_error(registry):
    with pytest.raises(ConfigError):
        _resolver(registry, FakeHttpClient(always_empty)).resolve(BARCELONA, "amenities")


LISBOA = GeoPoint(-9.1393, 38.7223)


def _square(lon: float, lat: float, half: float) -> dict:
    ring = [[lon - half, lat - half], [lon + half, lat - half], [lon + half, lat + half], [lon - half, lat + half]]
    return {"type": "Polygon", "coordinates": [[*ring, ring[0]]]}


def portuguese_responder(kind, url, _params):
    if url.endswith("/collections"):
        return {
            "collections": [
                {"id": "municipios", "title": "Municípios"},
                {"id": "crus_abrantes", "title": "CRUS Abrantes"},
                {"id": "crus_lisboa", "title": "CRUS Lisboa"},
            ]
        }
    if url.endswith("/collections/municipios/items"):
        return {
            "type": "FeatureCollection",
            "features": [
                {"id": "m.1", "geometry": _square(-8.1, 39.4, 0.1), "properties": {"municipio": "Abrantes"}},
                {"id": "m.2", "geometry": _square(-9.14, 38.72, 0.05), "properties": {"municipio": "Lisboa"}},
            ],
        }
    if url.endswith("/collections/crus_lisboa/items"):
        return {
            "type": "FeatureCollection",
            "features": [
                {"id": "crus.7", "geometry": _square(-9.14, 38.72, 0.01), "properties": {"Designacao": "Espaço Central"}}
            ],
        }
    return EMPTY_COLLECTION if kind == "json" else EMPTY_GML


@pytest.mark.integration
def test_portuguese_zoning_uses_the_municipality_collection(registry):
    http = FakeHttpClient(portuguese_responder)
    client = ProtocolClient(http)
    resolver = PointResolver(registry, RegionRouter.with_default_lookups(registry, client), client)

    payload = resolver.resolve(LISBOA, "zoning")

    assert payload["municipio"] == "Lisboa"
    assert payload["country"] == "PT"
    assert payload["typename"] == "crus_lisboa"
    assert payload["label"] == "Espaço Central"
    assert payload["picked_field"] == "Designacao"
    assert payload["feature_count"] == 1
    item_urls = [url for _, url, _ in http.calls if url.endswith("/items")]
    assert item_urls == [
        "https://ogcapi.dgterritorio.gov.pt/collections/municipios/items",
        "https://ogcapi.dgterritorio.gov.pt/collections/crus_lisboa/items",
    ]
    assert all(kwargs["verify"] is False for _, _, kwargs in http.calls)


@pytest.mark.integration
def test_portuguese_zoning_without_municipality_still_queries_crus(registry):
    def no_municipality(kind, url, params):
        if url.endswith("/collections/municipios/items"):
            raise HttpRequestError("HTTP status: 503")
        return portuguese_responder(kind, url, params)

    http = FakeHttpClient(no_municipality)
    client = ProtocolClient(http)
    resolver = PointResolver(registry, RegionRouter.with_default_lookups(registry, client), client)

    payload = resolver.resolve(LISBOA, "zoning")

    assert payload["municipio"] is None
    assert payload["country"] == "PT"
    # Without a hint the advertised order is kept, so crus_abrantes comes back empty first.
    assert payload["typename"] == "crus_lisboa"
