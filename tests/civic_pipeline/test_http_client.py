"""Tests for the HTTP client and page fetcher."""

import asyncio

import httpx
import pytest

from civic_pipeline.config import FetchConfig
from civic_pipeline.errors import ExtractionError
from civic_pipeline.http_client import HTTPClient, HTTPFetcher, RequestStats


def _dummy_client(handler, calls):
    """Build an httpx.AsyncClient stand-in whose requests go to ``handler``."""

    class DummyAsyncClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, **kwargs):
            calls.append((method, url, kwargs))
            request = httpx.Request(method, url)
            return await handler(request, len(calls))

    return DummyAsyncClient


async def noop_sleep(_):
    return None


@pytest.mark.asyncio
async def test_http_client_retries_on_server_error(monkeypatch):
    """HTTP client should retry on retryable server errors."""
    calls = []

    async def handler(request, attempt):
        if attempt < 3:
            response = httpx.Response(503, request=request)
            raise httpx.HTTPStatusError("Server error", request=request, response=response)
        return httpx.Response(200, request=request, text="ok")

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    monkeypatch.setattr("civic_pipeline.http_client.asyncio.sleep", noop_sleep)

    client = HTTPClient(max_retries=2, retry_base_delay=0.01)
    stats = RequestStats()

    response = await client.get_async("https://example.gov", stats=stats)

    assert response.status_code == 200
    assert response.text == "ok"
    assert len(calls) == 3
    assert stats.http_requests == 3
    assert stats.retry_attempts == 2


@pytest.mark.asyncio
async def test_http_client_does_not_retry_client_errors(monkeypatch):
    calls = []

    async def handler(request, attempt):
        response = httpx.Response(404, request=request)
        raise httpx.HTTPStatusError("Not found", request=request, response=response)

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    monkeypatch.setattr("civic_pipeline.http_client.asyncio.sleep", noop_sleep)

    with pytest.raises(httpx.HTTPStatusError):
        await HTTPClient(max_retries=3).get_async("https://example.gov/missing")

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_http_client_gives_up_after_transport_errors(monkeypatch):
    calls = []

    async def handler(request, attempt):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    monkeypatch.setattr("civic_pipeline.http_client.asyncio.sleep", noop_sleep)

    with pytest.raises(httpx.ConnectError):
        await HTTPClient(max_retries=2).get_async("https://example.gov")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_http_client_sends_default_headers(monkeypatch):
    calls = []

    async def handler(request, attempt):
        return httpx.Response(200, request=request, text="ok")

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))

    client = HTTPClient(user_agent="civic-test/0.1", headers={"Accept-Language": "en"})
    await client.request_async("GET", "https://example.gov", headers={"X-Trace": "1"})

    headers = calls[0][2]["headers"]
    assert headers == {"User-Agent": "civic-test/0.1", "Accept-Language": "en", "X-Trace": "1"}


def test_retry_delay_is_exponential_and_capped():
    client = HTTPClient(retry_base_delay=1.0, retry_exponential_base=2.0, retry_max_delay=5.0)

    assert [client._calculate_retry_delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.parametrize("status,expected", [(500, True), (503, True), (429, True), (408, True), (404, False), (401, False)])
def test_retryable_statuses(status, expected):
    assert HTTPClient()._should_retry_status(status) is expected


@pytest.mark.asyncio
async def test_fetcher_caches_responses(monkeypatch):
    calls = []

    async def handler(request, attempt):
        return httpx.Response(200, request=request, text="<html><body>page</body></html>")

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    fetcher = HTTPFetcher(FetchConfig(min_request_interval=0))

    first = await fetcher.fetch_url("https://example.gov/members")
    second = await fetcher.fetch_url("https://example.gov/members")

    assert first.content == second.content == "<html><body>page</body></html>"
    assert first.from_cache is False
    assert second.from_cache is True
    assert len(calls) == 1
    assert fetcher.stats.cache_hits == 1

    fetcher.clear_cache()
    await fetcher.fetch_url("https://example.gov/members")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_fetcher_without_ttl_does_not_cache(monkeypatch):
    calls = []

    async def handler(request, attempt):
        return httpx.Response(200, request=request, text="page")

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    fetcher = HTTPFetcher(FetchConfig(min_request_interval=0, cache_ttl_seconds=0))

    await fetcher.fetch_url("https://example.gov/members")
    await fetcher.fetch_url("https://example.gov/members")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_fetcher_shares_in_flight_requests(monkeypatch):
    calls = []

    async def handler(request, attempt):
        await asyncio.sleep(0.01)
        return httpx.Response(200, request=request, text="slow page")

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    fetcher = HTTPFetcher(FetchConfig(min_request_interval=0))

    results = await asyncio.gather(*(fetcher.fetch_url("https://example.gov/slow") for _ in range(3)))

    assert [r.content for r in results] == ["slow page"] * 3
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetcher_wraps_http_errors(monkeypatch):
    calls = []

    async def handler(request, attempt):
        response = httpx.Response(404, request=request)
        raise httpx.HTTPStatusError("Not found", request=request, response=response)

    monkeypatch.setattr("civic_pipeline.http_client.httpx.AsyncClient", _dummy_client(handler, calls))
    fetcher = HTTPFetcher(FetchConfig(min_request_interval=0))

    with pytest.raises(ExtractionError) as excinfo:
        await fetcher.fetch_url("https://example.gov/gone")

    assert excinfo.value.kind == ExtractionError.FETCH_FAILED
    assert "returned 404" in excinfo.value.message


def test_fetcher_parses_html():
    soup = HTTPFetcher(FetchConfig()).parse_html("<div class='members-list'><p>x</p></div>")

    assert soup.select_one(".members-list p").get_text() == "x"
