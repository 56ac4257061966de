"""
HTTP engine for the fetch workers.

One aiohttp session is shared by all workers. Request starts are spaced by
the configured rate limit, and transient failures are retried a bounded
number of times with a fixed delay.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import aiohttp


# Content types treated as crawlable markup
TEXT_CONTENT_TYPES = (
    'text/html',
    'application/xhtml+xml',
    'text/xml',
    'application/xml',
    'text/plain',
)


@dataclass
class FetchResult:
    """Outcome of one HTTP exchange (after any retries)."""
    url: str
    status_code: int
    content: Optional[str] = None
    final_url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


class RateLimiter:
    """Spaces request starts at least `interval` seconds apart across all callers."""

    def __init__(self, interval: float):
        self.interval = interval
        self._lock = asyncio.Lock()
        self._next_slot = 0.0

    async def wait(self):
        if self.interval <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            delay = self._next_slot - now
            if delay > 0:
                await asyncio.sleep(delay)
                now = time.monotonic()
            self._next_slot = now + self.interval


class WebFetcher:
    """
    Rate-limited page fetcher.

    Network errors, timeouts and 5xx responses are retried up to `retries`
    times, waiting `retry_timeout` milliseconds between attempts. 4xx
    responses, non-text content and oversized bodies fail immediately.
    """

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_concurrent_requests: int = 10, rate_limit: int = 1000,
                 retries: int = 3, retry_timeout: int = 10000,
                 max_content_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.retries = retries
        self.retry_delay = retry_timeout / 1000.0
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)
        self.rate_limiter = RateLimiter(rate_limit / 1000.0)
        self.session: Optional[aiohttp.ClientSession] = None
        self._slots = asyncio.Semaphore(max_concurrent_requests)

        self.stats = {
            'requests': 0,
            'pages': 0,
            'failures': 0,
            'retries': 0,
            'bytes': 0,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Open the shared HTTP session if it is not open yet."""
        if self.session is not None:
            return

        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            headers={'User-Agent': self.user_agent},
            connector=aiohttp.TCPConnector(limit=self.max_concurrent_requests,
                                           ttl_dns_cache=300),
        )
        self.logger.info("HTTP session opened (user agent %r)", self.user_agent)

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None
            self.logger.info("HTTP session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL, retrying transient failures.

        Never raises for network problems; failures are reported in
        FetchResult.error.
        """
        await self.start()

        attempt = 0
        while True:
            attempt += 1
            result, retryable = await self._fetch_once(url)
            result.attempts = attempt

            if result.error is None:
                return result
            if not retryable or attempt > self.retries:
                self.stats['failures'] += 1
                return result

            self.stats['retries'] += 1
            self.logger.info("Retrying %s in %.1fs (%d/%d): %s",
                             url, self.retry_delay, attempt, self.retries, result.error)
            await asyncio.sleep(self.retry_delay)

    async def _fetch_once(self, url: str) -> Tuple[FetchResult, bool]:
        """One HTTP attempt. Returns the result and whether a failure is worth retrying."""
        started = time.monotonic()
        result = FetchResult(url=url, status_code=0)

        async with self._slots:
            await self.rate_limiter.wait()
            self.stats['requests'] += 1

            try:
                async with self.session.get(url) as response:
                    result.status_code = response.status
                    result.final_url = str(response.url)
                    result.headers = dict(response.headers)
                    result.content_type = response.headers.get('Content-Type', '').lower()

                    if response.status >= 400:
                        result.error = f"HTTP {response.status}"
                        retryable = response.status >= 500
                    elif not self._is_text_content(result.content_type):
                        result.error = "Non-text content type"
                        retryable = False
                    else:
                        result.content = await self._read_body(response)
                        if result.content is None:
                            result.error = "Content too large"
                        retryable = False

            except aiohttp.InvalidURL as e:
                result.error = f"Invalid URL: {e}"
                retryable = False
            except asyncio.TimeoutError:
                result.error = "Request timeout"
                retryable = True
            except aiohttp.ClientError as e:
                result.error = f"Client error: {e}"
                retryable = True

        result.fetch_time = time.monotonic() - started

        if result.ok:
            self.stats['pages'] += 1
            self.stats['bytes'] += len(result.content)
            self.logger.debug("Fetched %s: HTTP %d, %d chars in %.2fs",
                              url, result.status_code, len(result.content), result.fetch_time)
        else:
            self.logger.warning("Fetch of %s failed: %s", url, result.error)

        return result, retryable

    @staticmethod
    def _is_text_content(content_type: str) -> bool:
        # No Content-Type header: assume HTML
        if not content_type:
            return True
        return content_type.split(';')[0].strip() in TEXT_CONTENT_TYPES

    async def _read_body(self, response: aiohttp.ClientResponse) -> Optional[str]:
        """Read and decode the body, or return None if it exceeds max_content_size."""
        declared = response.content_length
        if declared is not None and declared > self.max_content_size:
            return None

        body = bytearray()
        async for chunk in response.content.iter_chunked(64 * 1024):
            body.extend(chunk)
            if len(body) > self.max_content_size:
                return None

        charset = response.charset or 'utf-8'
        try:
            return body.decode(charset)
        except (UnicodeDecodeError, LookupError):
            return body.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
