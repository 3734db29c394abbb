"""
Retrying processor: fetch and extract one URL with bounded, linearly backed-off retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .fetcher import FetchError, WebFetcher
from .parser import ContentParser
from .url_frontier import CrawlTarget
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


class CrawlCancelledError(Exception):
    """The run was cancelled before this target reached a terminal outcome."""

    def __init__(self, url: str):
        super().__init__(f"Crawl cancelled before completing {url}")
        self.url = url


@dataclass(frozen=True)
class PageRecord:
    """Terminal outcome for one URL: extracted content, or the last error."""
    url: str
    title: str = ""
    main_text: str = ""
    html_fragment: str = ""
    meta_tags: Dict[str, str] = field(default_factory=dict)
    source_label: str = ""
    error: Optional[str] = None
    attempts: int = 0
    final_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, target: CrawlTarget, error: str, attempts: int) -> 'PageRecord':
        return cls(
            url=target.url,
            source_label=target.source_label,
            error=error or "Unknown error",
            attempts=attempts
        )

    def summary(self) -> dict:
        """Per-URL status without page bodies."""
        return {
            'url': self.url,
            'title': self.title,
            'error': self.error,
            'attempts': self.attempts,
        }


class RetryingProcessor:
    """
    Runs fetch + extract for a single target.

    Every failure except cancellation is retried until ``max_attempts`` is
    reached, waiting ``base_delay * attempt`` seconds in between. Exhaustion
    is not an exception: it yields a PageRecord whose ``error`` holds the
    last failure message. Cancellation, signalled through ``cancel_event``,
    raises CrawlCancelledError and is never retried.
    """

    def __init__(self, fetcher: WebFetcher, parser: ContentParser,
                 max_attempts: int = 3, base_delay: float = 1.0,
                 request_timeout: Optional[float] = None,
                 cancel_event: Optional[asyncio.Event] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.fetcher = fetcher
        self.parser = parser
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.request_timeout = request_timeout
        self.cancel_event = cancel_event or asyncio.Event()
        self.monitor = monitor

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return self.base_delay * attempt

    async def process(self, target: CrawlTarget) -> PageRecord:
        logger = get_crawler_logger(__name__, url=target.url, source=target.source_label)
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            if self.cancel_event.is_set():
                raise CrawlCancelledError(target.url)

            target.retry_count = attempt - 1
            try:
                result = await self.fetcher.fetch(target.url, self.request_timeout)
                content = self.parser.extract(result.content)

                if attempt > 1:
                    logger.info(f"Fetched {target.url} on attempt {attempt}/{self.max_attempts}")

                return PageRecord(
                    url=target.url,
                    title=content.title,
                    main_text=content.main_text,
                    html_fragment=content.html_fragment,
                    meta_tags=content.meta_tags,
                    source_label=target.source_label,
                    attempts=attempt,
                    final_url=result.final_url
                )

            except Exception as e:
                last_error = e
                if isinstance(e, FetchError) and not e.transient:
                    logger.warning(f"Permanent error processing {target.url} "
                                   f"(Attempt {attempt}/{self.max_attempts}): {e}")
                else:
                    logger.warning(f"Error processing {target.url} "
                                   f"(Attempt {attempt}/{self.max_attempts}): {e}")

            if attempt < self.max_attempts:
                if self.monitor:
                    self.monitor.record_fetch_retry(target.url)
                await self._wait(self.backoff_delay(attempt), target)

        logger.error(f"Failed to process {target.url} after {self.max_attempts} attempts")
        return PageRecord.failed(target, str(last_error), self.max_attempts)

    async def _wait(self, delay: float, target: CrawlTarget):
        """Sleep for ``delay`` seconds, waking early if the run is cancelled."""
        if delay > 0:
            try:
                await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return

        if self.cancel_event.is_set():
            raise CrawlCancelledError(target.url)
