"""Shared httpx plumbing for vendor adapters.

Subclasses implement only the vendor wire format (``_send`` and
``_probe``); this base owns the client, the timing, and the translation of
HTTP and transport failures into a retryable/non-retryable ``AdapterError``.
"""

from __future__ import annotations

import time
from typing import Any, ClassVar

import httpx
import structlog

from relaygate.ports.outbound import ProviderAdapter
from relaygate.shared.providers.types import (
    HealthCheckResult,
    NormalizedResult,
    ProviderConfig,
    ProviderRequest,
)

logger = structlog.get_logger(__name__)

# Vendor-specific overload markers (Anthropic 529 / overloaded_error, Google RESOURCE_EXHAUSTED).
OVERLOAD_STATUSES = frozenset({429, 529})
OVERLOAD_MARKERS = ("overloaded", "resource_exhausted", "rate_limit")


def is_retryable_status(status: int, body: str = "") -> bool:
    """5xx, 429, 529 and vendor overload codes can succeed on retry; other 4xx cannot."""
    if status >= 500 or status in OVERLOAD_STATUSES:
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in OVERLOAD_MARKERS)


def _error_detail(response: httpx.Response) -> tuple[str | None, str]:
    """Best-effort (vendor code, message) from an error body."""
    try:
        data = response.json()
    except ValueError:
        return None, response.text[:200] or response.reason_phrase
    if not isinstance(data, dict):
        return None, str(data)[:200]
    error = data.get("error")
    if isinstance(error, dict):
        code = error.get("type") or error.get("status") or error.get("code")
        return (str(code) if code is not None else None), str(error.get("message") or response.reason_phrase)
    if "code" in data or "message" in data:
        code = data.get("code")
        return (str(code) if code is not None else None), str(data.get("message") or response.reason_phrase)
    if "info" in data:
        return None, str(data["info"])
    return None, response.reason_phrase


class HttpProviderAdapter(ProviderAdapter):
    """Base for adapters that talk JSON (or form) over HTTPS."""

    default_base_url: ClassVar[str] = ""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._healthy = False
        self._config: Any = None

    async def initialize(self, config: ProviderConfig) -> None:
        self._validate(config)
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=(config.base_url or self.default_base_url).rstrip("/"),
            timeout=config.timeout_s,
            transport=self._transport,
        )
        self._healthy = True

    def is_healthy(self) -> bool:
        return self._healthy and self._client is not None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._healthy = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.provider_code} adapter is not initialized")
        return self._client

    # ── Contract ─────────────────────────────────────────────
    async def execute(self, request: ProviderRequest) -> NormalizedResult:
        if self._client is None:
            return NormalizedResult.failure(
                "NOT_INITIALIZED", "Provider not initialized", retryable=False
            )
        if request.family != self.family:
            return NormalizedResult.failure(
                "UNSUPPORTED_REQUEST",
                f"{self.provider_code} cannot serve {request.family.value} requests",
                retryable=False,
            )

        start = time.monotonic()
        try:
            response = await self._send(request)
        except httpx.TimeoutException as exc:
            return NormalizedResult.failure(
                "TIMEOUT", str(exc) or "Request timed out", retryable=True,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        except httpx.TransportError as exc:
            return NormalizedResult.failure(
                "NETWORK_ERROR", f"{type(exc).__name__}: {exc}", retryable=True,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        latency_ms = (time.monotonic() - start) * 1000

        if response.status_code >= 400:
            return self._classify(response, latency_ms)

        try:
            result = self._parse(request, response.json())
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            return NormalizedResult.failure(
                "INVALID_RESPONSE", f"Unparseable response: {exc}", retryable=False,
                latency_ms=latency_ms,
            )
        result.latency_ms = latency_ms
        return result

    async def health_check(self) -> HealthCheckResult:
        if self._client is None:
            return HealthCheckResult(False, 0.0, "Provider not initialized")
        start = time.monotonic()
        try:
            response = await self._probe()
        except httpx.HTTPError as exc:
            self._healthy = False
            return HealthCheckResult(
                False, (time.monotonic() - start) * 1000, f"{type(exc).__name__}: {exc}"
            )
        latency_ms = (time.monotonic() - start) * 1000
        self._healthy = response.status_code < 400
        if self._healthy:
            return HealthCheckResult(True, latency_ms, "OK")
        return HealthCheckResult(
            False, latency_ms, f"API returned {response.status_code}: {response.reason_phrase}"
        )

    # ── Vendor hooks ─────────────────────────────────────────
    def _validate(self, config: ProviderConfig) -> None:
        """Raise ``ConfigurationError`` for unusable config."""

    async def _send(self, request: ProviderRequest) -> httpx.Response:
        raise NotImplementedError

    def _parse(self, request: ProviderRequest, data: Any) -> NormalizedResult:
        raise NotImplementedError

    async def _probe(self) -> httpx.Response:
        raise NotImplementedError

    # ── Internals ────────────────────────────────────────────
    def _classify(self, response: httpx.Response, latency_ms: float) -> NormalizedResult:
        vendor_code, message = _error_detail(response)
        retryable = is_retryable_status(response.status_code, f"{vendor_code or ''} {message}")
        logger.debug(
            "provider_http_error",
            provider=self.provider_code,
            status=response.status_code,
            vendor_code=vendor_code,
            retryable=retryable,
        )
        return NormalizedResult.failure(
            f"HTTP_{response.status_code}", message, retryable=retryable, latency_ms=latency_ms
        )
