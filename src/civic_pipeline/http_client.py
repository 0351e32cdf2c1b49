"""HTTP client with retry and timeout support, and the page fetcher built on it."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from .config import FetchConfig
from .errors import ExtractionError
from .logging_config import get_logger
from .structure_hasher import parse_html

logger = get_logger("http_client")


@dataclass
class RequestStats:
    """Counters for outbound requests."""

    http_requests: int = 0
    retry_attempts: int = 0
    cache_hits: int = 0


@dataclass
class FetchResult:
    """A fetched page."""

    url: str
    content: str
    status_code: int
    content_type: str = ""
    from_cache: bool = False


class HTTPClient:
    """HTTP client wrapper with retry logic, timeout, and exponential backoff."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_exponential_base: float = 2.0,
        retry_max_delay: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        user_agent: str = "civic-pipeline/1.0",
    ) -> None:
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_exponential_base = retry_exponential_base
        self.retry_max_delay = retry_max_delay
        self.timeout = httpx.Timeout(
            connect=10.0,
            read=timeout_seconds,
            write=10.0,
            pool=5.0,
        )
        self.headers = {
            "User-Agent": user_agent,
            **(headers or {}),
        }

    @classmethod
    def from_fetch_config(cls, config: FetchConfig) -> "HTTPClient":
        return cls(
            timeout_seconds=config.timeout_seconds,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
            retry_exponential_base=config.retry_exponential_base,
            retry_max_delay=config.retry_max_delay,
            headers=config.headers,
            user_agent=config.user_agent,
        )

    async def get_async(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        follow_redirects: bool = True,
        stats: Optional[RequestStats] = None,
    ) -> httpx.Response:
        return await self.request_async(
            "GET",
            url,
            headers=headers,
            params=params,
            follow_redirects=follow_redirects,
            stats=stats,
        )

    async def request_async(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        json: Optional[Any] = None,
        follow_redirects: bool = True,
        stats: Optional[RequestStats] = None,
    ) -> httpx.Response:
        merged_headers = {**self.headers, **(headers or {})}

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=follow_redirects,
        ) as client:
            for attempt in range(self.max_retries + 1):
                if stats:
                    stats.http_requests += 1
                try:
                    response = await client.request(
                        method,
                        url,
                        headers=merged_headers,
                        params=params,
                        data=data,
                        json=json,
                    )
                    response.raise_for_status()
                    return response

                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code
                    if self._should_retry_status(status_code) and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt + 1)
                        if stats:
                            stats.retry_attempts += 1
                        logger.warning(
                            "Request %s %s failed with status %s. Retrying in %.2fs (attempt %s/%s)",
                            method,
                            url,
                            status_code,
                            delay,
                            attempt + 1,
                            self.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue

                    logger.error(
                        "Request %s %s failed with status %s: %s",
                        method,
                        url,
                        status_code,
                        exc,
                    )
                    raise

                except (httpx.RequestError, httpx.TimeoutException) as exc:
                    if attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt + 1)
                        if stats:
                            stats.retry_attempts += 1
                        logger.warning(
                            "Request %s %s failed (%s). Retrying in %.2fs (attempt %s/%s)",
                            method,
                            url,
                            exc,
                            delay,
                            attempt + 1,
                            self.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue

                    logger.error(
                        "Request %s %s failed after %s attempts: %s",
                        method,
                        url,
                        attempt + 1,
                        exc,
                    )
                    raise

        raise RuntimeError(f"Request {method} {url} failed after retries")

    def _should_retry_status(self, status_code: int) -> bool:
        if status_code >= 500:
            return True
        return status_code in {408, 409, 425, 429}

    def _calculate_retry_delay(self, retry_number: int) -> float:
        delay = self.retry_base_delay * (self.retry_exponential_base ** (retry_number - 1))
        return min(delay, self.retry_max_delay)


class HTTPFetcher:
    """Page fetcher with a TTL cache, in-flight dedupe and a request interval.

    Concurrent fetches of the same URL share one request. Responses are cached
    for ``cache_ttl_seconds`` and successive requests are spaced at least
    ``min_request_interval`` seconds apart.
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        client: Optional[HTTPClient] = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.client = client or HTTPClient.from_fetch_config(self.config)
        self.stats = RequestStats()
        self._cache: "OrderedDict[str, Tuple[float, FetchResult]]" = OrderedDict()
        self._in_flight: Dict[str, "asyncio.Future[FetchResult]"] = {}
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_requests))
        self._interval_lock = asyncio.Lock()
        self._last_request_at = 0.0

    async def fetch_url(self, url: str) -> FetchResult:
        cached = self._cache_get(url)
        if cached is not None:
            self.stats.cache_hits += 1
            logger.debug("Cache hit for %s", url)
            return cached

        pending = self._in_flight.get(url)
        if pending is not None:
            logger.debug("Joining in-flight fetch for %s", url)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch(url))
        self._in_flight[url] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._in_flight.pop(url, None)
            else:
                task.add_done_callback(lambda _: self._in_flight.pop(url, None))

    def parse_html(self, content: str) -> BeautifulSoup:
        return parse_html(content)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _fetch(self, url: str) -> FetchResult:
        async with self._semaphore:
            await self._wait_for_interval()
            try:
                response = await self.client.get_async(url, stats=self.stats)
            except httpx.HTTPStatusError as exc:
                raise ExtractionError(
                    f"Fetch failed: {url} returned {exc.response.status_code}",
                    kind=ExtractionError.FETCH_FAILED,
                ) from exc
            except httpx.HTTPError as exc:
                raise ExtractionError(
                    f"Fetch failed: {url} ({exc})",
                    kind=ExtractionError.FETCH_FAILED,
                ) from exc

        result = FetchResult(
            url=str(response.url) if response.url else url,
            content=response.text,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
        )
        logger.info("Fetched %s (%d bytes)", url, len(result.content))
        self._cache_put(url, result)
        return result

    async def _wait_for_interval(self) -> None:
        interval = self.config.min_request_interval
        if interval <= 0:
            return
        async with self._interval_lock:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < interval:
                await asyncio.sleep(interval - elapsed)
            self._last_request_at = time.monotonic()

    def _cache_get(self, url: str) -> Optional[FetchResult]:
        entry = self._cache.get(url)
        if entry is None:
            return None
        expires_at, result = entry
        if time.monotonic() >= expires_at:
            del self._cache[url]
            return None
        self._cache.move_to_end(url)
        return FetchResult(
            url=result.url,
            content=result.content,
            status_code=result.status_code,
            content_type=result.content_type,
            from_cache=True,
        )

    def _cache_put(self, url: str, result: FetchResult) -> None:
        if self.config.cache_ttl_seconds <= 0:
            return
        self._cache[url] = (time.monotonic() + self.config.cache_ttl_seconds, result)
        self._cache.move_to_end(url)
        while len(self._cache) > self.config.cache_max_entries:
            self._cache.popitem(last=False)
