import asyncio

import httpx
import pytest

from shipping_engine.core.exceptions import ProviderUnavailableError
from shipping_engine.core.http_client import ResilientHTTPClient, RetryConfig

from conftest import make_client


@pytest.mark.asyncio
async def test_retries_5xx_then_succeeds():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    client = make_client(handler, max_retries=2)
    resp = await client.get("https://vendor.example/rates")
    await client.close()

    assert resp.status_code == 200
    assert call_count == 3


@pytest.mark.asyncio
async def test_4xx_is_not_retried():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(400, json={"message": "bad pincode"})

    client = make_client(handler, max_retries=3)
    resp = await client.post("https://vendor.example/orders", json={})
    await client.close()

    assert resp.status_code == 400
    assert call_count == 1


@pytest.mark.asyncio
async def test_exhausted_status_retries_return_last_response():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(502)

    client = make_client(handler, max_retries=1)
    resp = await client.get("https://vendor.example/rates")
    await client.close()

    assert resp.status_code == 502
    assert call_count == 2


@pytest.mark.asyncio
async def test_network_failure_raises_unavailable_after_retries():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler, name="shipway", max_retries=2)
    with pytest.raises(ProviderUnavailableError) as exc_info:
        await client.get("https://vendor.example/rates")
    await client.close()

    assert call_count == 3
    assert exc_info.value.code == "PROVIDER_UNAVAILABLE"
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_429_honours_short_retry_after():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"ok": True})

    client = make_client(handler, max_retries=1)
    resp = await client.get("https://vendor.example/rates")
    await client.close()

    assert resp.status_code == 200
    assert call_count == 2


def test_backoff_grows_exponentially_and_caps():
    client = ResilientHTTPClient(
        retry_config=RetryConfig(base_delay=0.5, max_delay=1.5, jitter_max=0),
    )
    assert client._calculate_backoff(1) == 0.5
    assert client._calculate_backoff(2) == 1.0
    assert client._calculate_backoff(3) == 1.5


def test_retryable_status_classification():
    cfg = RetryConfig()
    assert cfg.is_retryable_status(500)
    assert cfg.is_retryable_status(429)
    assert cfg.is_retryable_status(408)
    assert not cfg.is_retryable_status(404)
    assert not cfg.is_retryable_status(401)


@pytest.mark.asyncio
async def test_close_waits_for_in_flight_request():
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await release.wait()
        return httpx.Response(200, json={"ok": True})

    client = make_client(handler)
    call = asyncio.create_task(client.get("https://vendor.example/rates"))
    await started.wait()

    await client.close()
    assert client.in_flight == 1
    assert client._client is not None

    release.set()
    resp = await call

    assert resp.status_code == 200
    assert client.in_flight == 0
    assert client._client is None


@pytest.mark.asyncio
async def test_request_after_close_uses_a_fresh_pool():
    client = make_client(lambda request: httpx.Response(200, json={"ok": True}))
    await client.init()
    await client.close()

    resp = await client.get("https://vendor.example/rates")

    assert resp.status_code == 200
    # The temporary pool is not left open
    assert client._client is None
