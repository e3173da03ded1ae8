"""
Resilient HTTP Client for Aggregator API Calls

Every provider adapter goes through this client:
- Bounded retries with exponential backoff plus jitter
- Retries network errors, timeouts, 5xx, 429 and 408
- Never retries other 4xx (the vendor has said no)
- 429 Retry-After respected when it is short enough to wait for

When retries run out on a retryable *status*, the last response is handed
back so the adapter can read the vendor's error body. When they run out on
a transport error, ProviderUnavailableError is raised: an unreachable
vendor is never silently turned into an empty response here.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shipping_engine.core.config import settings
from shipping_engine.core.exceptions import ProviderUnavailableError

logger = logging.getLogger(__name__)

# Longest Retry-After we are willing to sleep through inside one call
MAX_RETRY_AFTER_WAIT = 60.0


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 30.0           # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_max: float = 0.1           # Up to 100ms of random jitter

    # 5xx are always retryable; these are the extra 4xx that are transient
    retryable_status_codes: tuple = (408, 429)

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.SHIPPING_HTTP_MAX_RETRIES,
            base_delay=settings.SHIPPING_HTTP_BACKOFF_MS / 1000,
        )

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code >= 500 or status_code in self.retryable_status_codes


class ResilientHTTPClient:
    """
    Async HTTP client with retry/backoff.

    Usage:
        async with ResilientHTTPClient(name="shiprocket") as client:
            response = await client.get("https://apiv2.shiprocket.in/...")

    `transport` is passed through to httpx (tests use httpx.MockTransport).

    close() never pulls the connection pool out from under a running
    request: it is deferred until the last in-flight request returns. A
    request made after close() gets a fresh pool that is closed again when
    that request finishes.
    """

    def __init__(
        self,
        name: str = "http",
        retry_config: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.default_headers = default_headers or {"Content-Type": "application/json"}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._in_flight = 0
        self._close_requested = False

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _pool(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        self._close_requested = False
        self._pool()
        return self

    async def close(self):
        """Close the client, or mark it for closing once in-flight requests finish."""
        self._close_requested = True
        if self._in_flight == 0:
            await self._release_pool()

    async def _release_pool(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Formula: min(base * exp_base^(attempt-1) + jitter, max_delay)
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** (attempt - 1))
        delay += random.uniform(0, cfg.jitter_max) if cfg.jitter_max > 0 else 0.0
        return min(delay, cfg.max_delay)

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header, returns seconds to wait."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

        try:
            from email.utils import parsedate_to_datetime
            dt = parsedate_to_datetime(retry_after)
            return max(0.0, dt.timestamp() - time.time())
        except (ValueError, TypeError):
            pass

        return None

    async def request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Make an HTTP request with retries.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            httpx.Response, possibly non-2xx (caller inspects the status)

        Raises:
            ProviderUnavailableError: Network failure on every attempt
        """
        self._in_flight += 1
        try:
            return await self._send_with_retries(self._pool(), method, url, **kwargs)
        finally:
            self._in_flight -= 1
            if self._close_requested and self._in_flight == 0:
                await self._release_pool()

    async def _send_with_retries(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        cfg = self.retry_config
        attempts = cfg.max_retries + 1
        last_exception: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                logger.debug(f"[HTTP] {self.name} {method} {url} (attempt {attempt}/{attempts})")
                response = await client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e
                if attempt < attempts:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"[HTTP] {self.name}: {type(e).__name__}, retrying in {delay:.2f}s "
                        f"(attempt {attempt})"
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if cfg.is_retryable_status(response.status_code) and attempt < attempts:
                delay = self._calculate_backoff(attempt)
                if response.status_code == 429:
                    retry_after = self._parse_retry_after(response)
                    if retry_after is not None and retry_after <= MAX_RETRY_AFTER_WAIT:
                        delay = retry_after
                logger.warning(
                    f"[HTTP] {self.name}: Status {response.status_code}, "
                    f"retrying in {delay:.2f}s (attempt {attempt})"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.info(f"[HTTP] {self.name}: {method} {url} -> {response.status_code}")
            return response

        logger.error(f"[HTTP] {self.name}: All {attempts} attempts failed: {last_exception}")
        raise ProviderUnavailableError(
            f"{self.name} unreachable after {attempts} attempts: {last_exception}",
            provider_id=self.name,
        ) from last_exception

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """GET request with retries."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """POST request with retries."""
        return await self.request("POST", url, **kwargs)

