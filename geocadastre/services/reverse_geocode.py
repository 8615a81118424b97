"""Best-effort reverse geocoding for municipality classification."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from geocadastre.common.http import HttpClient, HttpRequestError, RetryConfig, TimeoutConfig
from geocadastre.common.logging import log_event
from geocadastre.common.models import GeoPoint

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
NAME_FIELDS = ("city", "town", "village", "municipality", "county")
DISTRICT_FIELDS = ("state", "county")

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MunicipalityInfo:
    name: str
    district: str | None
    country_code: str | None
    display_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _first(mapping: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def municipality_from_payload(payload: Any) -> MunicipalityInfo | None:
    if not isinstance(payload, dict):
        return None
    address = payload.get("address")
    if not isinstance(address, dict):
        return None
    name = _first(address, NAME_FIELDS)
    if name is None:
        return None
    country_code = address.get("country_code")
    return MunicipalityInfo(
        name=name,
        district=_first(address, DISTRICT_FIELDS),
        country_code=country_code.upper() if isinstance(country_code, str) else None,
        display_name=payload.get("display_name"),
    )


class ReverseGeocoder:
    """Nominatim-style ``/reverse`` lookups.

    This is the one request that is retried as-is: up to ``retries`` extra
    attempts with exponential backoff starting at ``initial_wait`` seconds.
    Exhausted retries degrade to ``None``.
    """

    def __init__(
        self,
        http_client: HttpClient,
        *,
        base_url: str = NOMINATIM_REVERSE_URL,
        retries: int = 3,
        initial_wait: float = 0.1,
        max_wait: float = 2.0,
        timeout: TimeoutConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http_client = http_client
        self.base_url = base_url
        self.retries = retries
        self.initial_wait = initial_wait
        self.max_wait = max_wait
        self.timeout = timeout or TimeoutConfig.from_seconds(10.0)
        self.sleep = sleep
        self.logger = logger or LOGGER

    def _fetch(self, point: GeoPoint) -> Any:
        return self.http_client.get_json(
            self.base_url,
            source_type="reverse_geocode",
            params={
                "format": "json",
                "lat": point.latitude,
                "lon": point.longitude,
                "addressdetails": 1,
                "zoom": 10,
            },
            timeout=self.timeout,
            retry=RetryConfig(max_attempts=1),
        )

    def lookup(self, point: GeoPoint) -> MunicipalityInfo | None:
        @retry(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait),
            retry=retry_if_exception_type(HttpRequestError),
            sleep=self.sleep,
            reraise=True,
        )
        def _wrapped() -> Any:
            return self._fetch(point)

        try:
            payload = _wrapped()
        except HttpRequestError as exc:
            log_event(
                self.logger,
                f"reverse geocoding failed after {self.retries + 1} attempts: {exc}",
                level=logging.WARNING,
                source="reverse_geocode",
                event="REVERSE_GEOCODE_FAILED",
                status="error",
                attempt=self.retries + 1,
                error_code=exc.error_code,
            )
            return None
        if isinstance(payload, dict) and payload.get("error"):
            return None
        return municipality_from_payload(payload)
