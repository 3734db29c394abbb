"""
Web page fetcher: one bounded-timeout GET per call, failures surfaced as typed errors.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError


DEFAULT_MAX_CONTENT_SIZE = 10 * 1024 * 1024


class FetchError(Exception):
    """A single fetch attempt failed."""

    transient = True

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    """The request did not complete within its timeout."""


class NetworkError(FetchError):
    """Connection-level failure (DNS, refused, reset, TLS)."""


class HttpStatusError(FetchError):
    """The server answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int, reason: Optional[str] = None):
        message = f"HTTP {status_code}" + (f" {reason}" if reason else "")
        super().__init__(url, message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429


class UnsupportedContentError(FetchError):
    """The response body is not text or is larger than the size limit."""

    transient = False


@dataclass
class FetchResult:
    """Result of a successful fetch."""
    url: str
    final_url: str
    status_code: int
    content: str
    headers: Optional[Dict[str, str]] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    encoding: Optional[str] = None


class WebFetcher:
    """
    Fetches web pages with a fixed User-Agent and a per-request timeout.

    The fetcher never retries: each call is exactly one attempt.
    """

    def __init__(self, user_agent: str, request_timeout: float = 30,
                 max_concurrent_requests: int = 10,
                 max_content_size: int = DEFAULT_MAX_CONTENT_SIZE):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)

        # Session management
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch
            timeout: Overrides the session timeout for this request (seconds)

        Returns:
            FetchResult with the decoded body and the final URL after redirects

        Raises:
            FetchTimeoutError, NetworkError, HttpStatusError, UnsupportedContentError
        """
        if self.session is None:
            await self.start()

        start_time = time.time()
        request_kwargs = {}
        if timeout:
            request_kwargs["timeout"] = ClientTimeout(total=timeout)

        async with self.semaphore:
            self.stats['total_requests'] += 1
            try:
                async with self.session.get(url, **request_kwargs) as response:
                    if not 200 <= response.status < 300:
                        self.logger.warning(f"HTTP {response.status} fetching {url}")
                        raise HttpStatusError(url, response.status, response.reason)

                    content_type = response.headers.get('content-type', '').lower()
                    if content_type and not self._is_text_content(content_type):
                        raise UnsupportedContentError(url, f"Non-text content type: {content_type}")

                    content = await self._read_content_safely(response)

                    self.stats['total_bytes_downloaded'] += len(content)
                    self.stats['successful_requests'] += 1

                    fetch_time = time.time() - start_time
                    self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} chars) "
                                      f"in {fetch_time:.2f}s")

                    return FetchResult(
                        url=url,
                        final_url=str(response.url),
                        status_code=response.status,
                        content=content,
                        headers=dict(response.headers),
                        content_type=content_type,
                        encoding=response.charset,
                        fetch_time=fetch_time
                    )

            except FetchError:
                self.stats['failed_requests'] += 1
                raise

            except asyncio.TimeoutError as e:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Timeout fetching {url}")
                raise FetchTimeoutError(url, "Request timeout") from e

            except ClientError as e:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Client error fetching {url}: {e}")
                raise NetworkError(url, f"Client error: {e}") from e

    def _is_text_content(self, content_type: str) -> bool:
        """Check if content type is text-based."""
        text_types = [
            'text/html',
            'text/plain',
            'text/xml',
            'application/xml',
            'application/xhtml+xml',
        ]

        return any(text_type in content_type for text_type in text_types)

    async def _read_content_safely(self, response: aiohttp.ClientResponse) -> str:
        """
        Read the response body, refusing anything above max_content_size.

        Raises:
            UnsupportedContentError: if the body is too large
        """
        url = str(response.url)
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            raise UnsupportedContentError(url, f"Content too large ({content_length} bytes)")

        content_bytes = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            content_bytes.extend(chunk)
            if len(content_bytes) > self.max_content_size:
                raise UnsupportedContentError(url, "Content exceeded size limit during reading")

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue

            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
