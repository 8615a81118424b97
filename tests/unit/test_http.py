from __future__ import annotations

import pytest
import requests

from geocadastre.common.http import HttpClient, HttpRequestError, HttpTimeoutError, RetryConfig, RetryableHttpError
from geocadastre.geo.gml import GMLFeatureParser


class FakeResponse:
    def __init__(self, status_code: int, payload=None, raises_json: bool = False, content: bytes = b""):
        self.status_code = status_code
        self._payload = payload
        self._raises_json = raises_json
        self.content = content

    def json(self):
        if self._raises_json:
            raise ValueError("bad json")
        return self._payload


def test_http_get_json_success(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))

    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(200, {"ok": True}))
    payload = client.get_json("https://example.com", source_type="wfs")

    assert payload == {"ok": True}


def test_http_get_xml_passes_params(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    seen = {}

    def fake_request(**kwargs):
        seen.update(kwargs)
        return FakeResponse(200, content=b"<FeatureCollection/>")

    monkeypatch.setattr(client.session, "request", fake_request)
    body = client.get_xml("https://example.com/wfs", source_type="wfs", params={"request": "GetFeature"})

    assert body == b"<FeatureCollection/>"
    assert seen["params"] == {"request": "GetFeature"}
    assert "User-Agent" in seen["headers"]


def test_http_retryable_status_raises_retryable_error(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(503, {"x": 1}))

    with pytest.raises(RetryableHttpError):
        client.get_json("https://example.com", source_type="wfs")


def test_http_client_error_status_raises(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(404))

    with pytest.raises(HttpRequestError):
        client.get_xml("https://example.com", source_type="wfs")


def test_http_invalid_json_raises(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(200, raises_json=True))

    with pytest.raises(HttpRequestError):
        client.get_json("https://example.com", source_type="wfs")


def test_http_timeout_is_converted(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))

    def slow(**_kwargs):
        raise requests.Timeout("too slow")

    monkeypatch.setattr(client.session, "request", slow)

    with pytest.raises(HttpTimeoutError) as excinfo:
        client.get_json("https://example.com", source_type="wfs")
    assert excinfo.value.error_code == "HTTP_TIMEOUT"


def test_http_connection_error_is_converted(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))

    def refused(**_kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client.session, "request", refused)

    with pytest.raises(HttpRequestError):
        client.get_xml("https://example.com", source_type="wfs")


def test_get_xml_keeps_utf8_labels_when_content_type_has_no_charset(monkeypatch):
    document = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<wfs:FeatureCollection xmlns:wfs="http://www.opengis.net/wfs/2.0" xmlns:muc="http://example.test/muc">'
        "<wfs:member><muc:MUC_CLASSIFICACIONS><muc:DESC_CLAS_MUC>Sòl urbà</muc:DESC_CLAS_MUC>"
        "</muc:MUC_CLASSIFICACIONS></wfs:member></wfs:FeatureCollection>"
    )

    def fake_request(**_kwargs):
        response = requests.Response()
        response.status_code = 200
        response.headers["Content-Type"] = "text/xml"
        response._content = document.encode("utf-8")
        # Same guess the transport adapter makes for text/* without a charset.
        response.encoding = requests.utils.get_encoding_from_headers(response.headers)
        return response

    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", fake_request)

    features = GMLFeatureParser().parse(client.get_xml("https://example.com/wfs", source_type="wfs"))

    assert features[0].properties["DESC_CLAS_MUC"] == "Sòl urbà"
