"""Gateway client: the delivery engine.

Turns a list of samples into authenticated ``POST {base}/health/data``
requests.  The list is re-chunked into sub-batches of at most
``batch_size``; each sub-batch is one physical request with its own retry
loop:

    attempt 0 fails → sleep min(base·2⁰, cap) → attempt 1 ...

Permanent failures (authentication, invalid configuration, insecure URL)
are raised on the first occurrence without retrying.  Every other
DeliveryError is retried until ``max_attempts`` is used up and then raised
to the caller, which owns the page-level retry and the Retry Queue.

Wire contract::

    request  {deviceId, userId, samples[], timestamp, appVersion}
    response {status, requestId?, timestamp, samplesReceived}

``status == "success"`` (case-insensitive) means ``samplesReceived`` of the
sub-batch were accepted; any other status means none were.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import ssl
from typing import Any, Awaitable, Callable, Sequence
from urllib.parse import urlsplit

import httpx

from src.healthsync.base import (
    DeliveryResult,
    GatewayConfig,
    HealthDataSample,
    isoformat_z,
    utc_now,
)
from src.healthsync.config_loader import InnerRetryConfig
from src.healthsync.errors import (
    AuthenticationError,
    DeliveryError,
    DeliveryTimeoutError,
    InsecureConnectionError,
    InvalidConfigurationError,
    NetworkError,
    ServerError,
    TLSValidationError,
)

logger = logging.getLogger("healthstack.delivery.gateway")

DATA_PATH = "/health/data"
HEALTH_PATH = "/health"

SleepFunc = Callable[[float], Awaitable[None]]


def _require_https(config: GatewayConfig) -> None:
    if not config.is_secure:
        raise InsecureConnectionError()


def build_url(config: GatewayConfig, path: str) -> str:
    """Join ``path`` onto the base URL, applying ``port`` when the URL has none."""
    base = config.base_url.strip().rstrip("/")
    if config.port is not None and urlsplit(base).port is None:
        parts = urlsplit(base)
        base = f"{parts.scheme}://{parts.netloc}:{config.port}{parts.path}"
    return base + path


def build_headers(config: GatewayConfig) -> dict[str, str]:
    """JSON content headers plus API key and/or Basic credentials."""
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if config.api_key:
        headers["X-API-Key"] = config.api_key
    if config.username and config.password:
        token = base64.b64encode(f"{config.username}:{config.password}".encode()).decode()
        headers["Authorization"] = f"Basic {token}"
    return headers


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    if status in (401, 403):
        raise AuthenticationError()
    if status == 408:
        raise DeliveryTimeoutError()
    raise ServerError(status, response.text or "Unknown error")


class GatewayClient:
    """Deliver samples to the remote gateway with per-request retry.

    Usage::

        client = GatewayClient(device_id="iphone-1", app_version="1.0")
        client.configure(GatewayConfig(base_url="https://gw.example.com"))
        result = await client.send_health_data(samples, user_id="u1")
    """

    def __init__(
        self,
        device_id: str = "unknown",
        app_version: str = "1.0",
        retry: InnerRetryConfig | None = None,
        batch_size: int = 100,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            device_id:   Stamped on every payload as ``deviceId``.
            app_version: Stamped on every payload as ``appVersion``.
            retry:       Inner retry policy (defaults: 5 attempts, 1s base, 16s cap).
            batch_size:  Maximum samples per physical request.
            timeout:     Connect/read timeout for every request, in seconds.
            http_client: Optional pre-configured httpx client (for testing).
            sleep:       Awaitable used for backoff delays (for testing).
        """
        self._device_id = device_id
        self._app_version = app_version
        self._retry = retry or InnerRetryConfig()
        self._batch_size = batch_size
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self._config: GatewayConfig | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: GatewayConfig) -> None:
        """Validate and store the gateway config.

        Raises:
            InvalidConfigurationError: Malformed URL or port.
            InsecureConnectionError:   Scheme is not https.
        """
        config.validate()
        _require_https(config)
        self._config = config
        logger.info("Gateway configured: %s", config.base_url)

    @property
    def config(self) -> GatewayConfig | None:
        return self._config

    @property
    def is_configured(self) -> bool:
        return self._config is not None

    def _checked_config(self) -> GatewayConfig:
        if self._config is None:
            raise InvalidConfigurationError()
        _require_https(self._config)
        return self._config

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send_health_data(
        self, samples: Sequence[HealthDataSample], user_id: str
    ) -> DeliveryResult:
        """Send ``samples`` in sub-batches and aggregate the outcome.

        ``synced_ids`` holds, for every sub-batch, its first
        ``samplesReceived`` ids in input order.

        Raises:
            DeliveryError: The first sub-batch that exhausts its retries (or
                fails permanently) aborts the whole call.
        """
        config = self._checked_config()
        synced_ids = []
        failed = 0

        for start in range(0, len(samples), self._batch_size):
            batch = list(samples[start:start + self._batch_size])
            accepted = await self._send_batch_with_retry(batch, user_id, config)
            synced_ids.extend(s.id for s in batch[:accepted])
            failed += len(batch) - accepted

        synced = len(synced_ids)
        return DeliveryResult(
            synced_count=synced,
            failed_count=failed,
            synced_ids=synced_ids,
            message="All data synced successfully" if failed == 0 else "Some data failed to sync",
        )

    async def test_connection(self) -> bool:
        """GET ``/health``; True on 2xx.

        Raises:
            DeliveryError: Non-2xx status or transport failure.
        """
        config = self._checked_config()
        url = build_url(config, HEALTH_PATH)
        headers = build_headers(config)
        headers.pop("Content-Type", None)
        try:
            response = await self._request("GET", url, headers=headers)
        except DeliveryError as exc:
            logger.error("Connection test failed: %s", exc)
            raise
        if not 200 <= response.status_code < 300:
            logger.error("Connection test failed: HTTP %d", response.status_code)
            raise ServerError(response.status_code, "Connection test failed")
        logger.info("Connection test successful")
        return True

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send_batch_with_retry(
        self, batch: list[HealthDataSample], user_id: str, config: GatewayConfig
    ) -> int:
        attempts = self._retry.max_attempts
        for attempt in range(attempts):
            try:
                return await self._send_batch(batch, user_id, config)
            except DeliveryError as exc:
                if exc.permanent:
                    raise
                if attempt + 1 >= attempts:
                    logger.error(
                        "Batch of %d failed after %d attempts: %s", len(batch), attempts, exc
                    )
                    raise
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Retry attempt %d/%d after %.1fs delay: %s", attempt + 1, attempts, delay, exc
                )
                await self._sleep(delay)
        raise NetworkError("Max retries exceeded")

    async def _send_batch(
        self, batch: list[HealthDataSample], user_id: str, config: GatewayConfig
    ) -> int:
        payload = {
            "deviceId": self._device_id,
            "userId": user_id,
            "samples": [s.to_payload() for s in batch],
            "timestamp": isoformat_z(utc_now()),
            "appVersion": self._app_version,
        }
        logger.info("Sending batch of %d samples for user %s", len(batch), user_id)

        response = await self._request(
            "POST", build_url(config, DATA_PATH), headers=build_headers(config), json=payload
        )
        _raise_for_status(response)

        try:
            body: dict[str, Any] = response.json()
            status = str(body["status"])
            received = int(body.get("samplesReceived", 0))
        except (ValueError, KeyError, TypeError) as exc:
            raise ServerError(response.status_code, f"Malformed response: {exc}") from exc

        if status.lower() != "success":
            logger.warning("Gateway reported status %r for batch of %d", status, len(batch))
            return 0
        accepted = max(0, min(received, len(batch)))
        logger.info("Batch sent: %d/%d accepted", accepted, len(batch))
        return accepted

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request, translating httpx failures into DeliveryErrors."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        try:
            return await self._http_client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise DeliveryTimeoutError() from exc
        except httpx.TransportError as exc:
            if isinstance(exc.__cause__, ssl.SSLError) or "CERTIFICATE_VERIFY_FAILED" in str(exc):
                raise TLSValidationError() from exc
            raise NetworkError(f"Network error: {exc}") from exc
