"""Explicit HTTP client with timeouts, optional retries, and host-aware rate limiting."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Callable, TypeVar
from urllib.parse import urlparse

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from geocadastre.common.constants import USER_AGENT
from geocadastre.common.errors import StageError

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

T = TypeVar("T")


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 10.0
    read: float = 30.0

    @classmethod
    def from_seconds(cls, seconds: float) -> "TimeoutConfig":
        return cls(connect=min(seconds, 10.0), read=seconds)


@dataclass(frozen=True)
class RetryConfig:
    # Feature queries advance a fallback chain instead of repeating a request.
    max_attempts: int = 1
    multiplier: float = 1.0
    max_wait: float = 30.0


class HttpRequestError(StageError):
    error_code = "HTTP_ERROR"


class RetryableHttpError(HttpRequestError):
    pass


class HttpTimeoutError(HttpRequestError):
    error_code = "HTTP_TIMEOUT"


class TokenBucket:
    def __init__(self, rate_per_sec: float, capacity: float | None = None) -> None:
        self.rate_per_sec = rate_per_sec
        self.capacity = capacity if capacity is not None else rate_per_sec
        self.tokens = self.capacity
        self.updated_at = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = now - self.updated_at
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
                self.updated_at = now
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                deficit = tokens - self.tokens
                wait_for = max(deficit / self.rate_per_sec, 0.01)
            time.sleep(wait_for)


class HostRateLimiter:
    def __init__(self, default_rate_per_sec: float) -> None:
        self.default_rate_per_sec = default_rate_per_sec
        self.buckets: dict[str, TokenBucket] = {}
        self.lock = threading.Lock()

    def acquire(self, host: str, tokens: float = 1.0) -> None:
        with self.lock:
            bucket = self.buckets.get(host)
            if bucket is None:
                bucket = TokenBucket(rate_per_sec=self.default_rate_per_sec)
                self.buckets[host] = bucket
        bucket.acquire(tokens=tokens)


class HttpClient:
    """One keep-alive session shared by every component that issues requests.

    Construct once per run and pass it down. Calls only read configuration
    and the session, so worker threads may share one instance.
    """

    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.session = requests.Session()
        self.reverse_geocode_limiter = HostRateLimiter(default_rate_per_sec=1.0)
        self.feature_service_limiter = HostRateLimiter(default_rate_per_sec=5.0)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _host(self, url: str) -> str:
        return urlparse(url).netloc

    def _apply_rate_limit(self, url: str, source_type: str) -> None:
        host = self._host(url)
        if source_type == "reverse_geocode":
            self.reverse_geocode_limiter.acquire(host)
        elif source_type in {"wfs", "ogc_api"}:
            self.feature_service_limiter.acquire(host)

    def _headers(self, headers: dict[str, str] | None, accept: str) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": accept}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status_or_retry(self, response: requests.Response) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise RetryableHttpError(f"Retryable HTTP status: {status}")
        if status >= 400:
            raise HttpRequestError(f"HTTP status: {status}")

    def _send(
        self,
        url: str,
        *,
        source_type: str,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        timeout: TimeoutConfig | None,
        verify: bool,
    ) -> requests.Response:
        req_timeout = timeout or self.timeout
        self._apply_rate_limit(url, source_type)
        try:
            response = self.session.request(
                method="GET",
                url=url,
                params=params,
                headers=headers,
                timeout=(req_timeout.connect, req_timeout.read),
                verify=verify,
            )
        except requests.Timeout as exc:
            raise HttpTimeoutError(f"Timed out requesting {url}") from exc
        except requests.RequestException as exc:
            raise HttpRequestError(f"Request to {url} failed: {exc}") from exc
        self._raise_for_status_or_retry(response)
        return response

    def _with_retry(self, retry_config: RetryConfig | None, call: Callable[[], T]) -> T:
        policy = retry_config or self.retry
        if policy.max_attempts <= 1:
            return call()

        @retry(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential_jitter(
                initial=policy.multiplier,
                max=policy.max_wait,
                jitter=1.0,
            ),
            retry=retry_if_exception_type(RetryableHttpError),
            reraise=True,
        )
        def _wrapped() -> T:
            return call()

        return _wrapped()

    def get_json(
        self,
        url: str,
        *,
        source_type: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        verify: bool = True,
    ) -> Any:
        def _call() -> Any:
            response = self._send(
                url,
                source_type=source_type,
                params=params,
                headers=self._headers(headers, "application/json, application/geo+json"),
                timeout=timeout,
                verify=verify,
            )
            try:
                return response.json()
            except ValueError as exc:
                raise HttpRequestError(f"Invalid JSON payload from {url}") from exc

        return self._with_retry(retry, _call)

    def get_xml(
        self,
        url: str,
        *,
        source_type: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        verify: bool = True,
    ) -> bytes:
        """Raw body bytes; the XML parser reads the charset from the document itself."""

        def _call() -> bytes:
            response = self._send(
                url,
                source_type=source_type,
                params=params,
                headers=self._headers(headers, "application/xml, text/xml, application/gml+xml"),
                timeout=timeout,
                verify=verify,
            )
            return response.content

        return self._with_retry(retry, _call)
