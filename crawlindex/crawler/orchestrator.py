"""
Crawl orchestrator: coordinates one crawl run from URL list to flushed index batches.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .fetcher import WebFetcher
from .parser import ContentParser
from .processor import PageRecord, RetryingProcessor
from .request import CrawlRequest
from .runner import ConcurrentCrawlRunner
from .sitemap import SitemapReader
from .url_frontier import URLFrontier, is_crawlable_url
from ..storage.batch_indexer import BatchIndexer
from ..storage.index_store import IndexFatalError, IndexStore, IndexStoreManager
from ..utils.config import Config
from ..utils.monitoring import CrawlerMonitor


@dataclass
class CrawlResult:
    """Outcome of one crawl run."""
    source: str
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    indexed: int = 0
    index_residue: int = 0
    records: List[PageRecord] = field(default_factory=list)

    @property
    def elapsed_time(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def failures(self) -> Dict[str, str]:
        return {record.url: record.error for record in self.records if not record.ok}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'cancelled': self.cancelled,
            'indexed': self.indexed,
            'index_residue': self.index_residue,
            'elapsed_time': round(self.elapsed_time, 3),
            'pages': [record.summary() for record in self.records],
        }


class IndexingError(Exception):
    """One or more index batches were lost during a run."""

    def __init__(self, result: CrawlResult, errors: List[IndexFatalError]):
        lost = sum(len(error.documents) for error in errors)
        super().__init__(f"{len(errors)} index batch failures for source '{result.source}' "
                         f"({lost} documents not indexed): {errors[0]}")
        self.result = result
        self.errors = errors


class CrawlOrchestrator:
    """
    Top-level coordinator for crawl runs.

    Each run gets its own frontier (seen set and pending queue) and its own
    batch indexer; nothing is shared between runs except the HTTP session
    and the index store connection.
    """

    def __init__(self, config: Config, index_store: Optional[IndexStore] = None,
                 fetcher: Optional[WebFetcher] = None, monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.fetcher = fetcher
        self.index_store = index_store
        self.monitor = monitor
        self.parser = ContentParser(
            content_selector=config.crawler.content_selector,
            prefer_main_landmark=config.crawler.prefer_main_landmark
        )

        self._cancel_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._sitemap_running = False
        self._initialized = False

    async def initialize(self):
        """Open the HTTP session and the index store."""
        if self._initialized:
            return

        try:
            if self.fetcher is None:
                self.fetcher = WebFetcher(
                    user_agent=self.config.crawler.user_agent,
                    request_timeout=self.config.crawler.request_timeout,
                    max_concurrent_requests=max(self.config.crawler.max_concurrency, 1) * 2,
                    max_content_size=self.config.crawler.max_content_size
                )
                await self.fetcher.start()

            if self.index_store is None:
                self.index_store = IndexStoreManager(self.config.indexer)
            await self.index_store.initialize()

            self._initialized = True
            self.logger.info("Crawl orchestrator initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawl orchestrator: {e}")
            raise

    async def run_request(self, payload: Dict[str, Any]) -> CrawlResult:
        """Validate an inbound payload and crawl it."""
        request = CrawlRequest.from_dict(payload)
        return await self.run_crawl(request.source, request.urls)

    async def run_crawl(self, source: str, urls: Iterable[str]) -> CrawlResult:
        """
        Crawl ``urls`` under the ``source`` label and index every page that succeeds.

        Raises:
            IndexingError: after all crawl work and the final flush, if any
                index batch failed fatally. The exception carries the result.
        """
        await self.initialize()

        result = CrawlResult(source=source)
        cancel_event = asyncio.Event()
        if self._stop_requested:
            cancel_event.set()
        self._cancel_event = cancel_event

        frontier = URLFrontier(source_label=source)
        for url in urls:
            if not url or not is_crawlable_url(url):
                self.logger.warning(f"Skipping invalid URL: {url!r}")
                result.skipped += 1
                continue
            if not frontier.offer(url):
                result.skipped += 1
                if self.monitor:
                    self.monitor.record_skipped(url)

        self.logger.info(f"=== CRAWL STARTING: {source} ({frontier.count} URLs, "
                         f"{result.skipped} skipped) ===")

        processor = RetryingProcessor(
            self.fetcher,
            self.parser,
            max_attempts=self.config.crawler.max_retries,
            base_delay=self.config.crawler.retry_base_delay,
            request_timeout=self.config.crawler.request_timeout,
            cancel_event=cancel_event,
            monitor=self.monitor
        )
        runner = ConcurrentCrawlRunner(
            processor,
            concurrency_limit=self.config.crawler.max_concurrency,
            dispatch_delay=self.config.crawler.dispatch_delay,
            cancel_event=cancel_event
        )
        indexer = BatchIndexer(
            self.index_store,
            batch_size=self.config.indexer.batch_size,
            max_concurrent_requests=self.config.indexer.max_concurrent_requests,
            max_retries=self.config.indexer.max_retries,
            backoff_base=self.config.indexer.backoff_base,
            monitor=self.monitor
        )

        index_errors: List[IndexFatalError] = []
        records = runner.stream(frontier)
        try:
            async for record in records:
                result.records.append(record)
                if self.monitor:
                    self.monitor.record_page(record.url, record.ok)

                if not record.ok:
                    result.failed += 1
                    continue

                result.succeeded += 1
                try:
                    await indexer.add(record)
                except IndexFatalError as e:
                    index_errors.append(e)
        finally:
            await records.aclose()
            result.cancelled = len(runner.cancelled)
            try:
                await indexer.flush_final()
            except IndexFatalError as e:
                index_errors.append(e)

            result.index_residue = indexer.pending
            result.indexed = indexer.stats['documents_indexed']
            result.end_time = time.time()
            self._cancel_event = None
            # A stop ends this run only; a sitemap run clears it once all its chunks are done
            if not self._sitemap_running:
                self._stop_requested = False
            self._log_final_stats(result, indexer)

        if index_errors:
            raise IndexingError(result, index_errors)

        return result

    async def run_sitemap(self, root_url: Optional[str] = None) -> List[CrawlResult]:
        """
        Crawl every page listed under a sitemap (or sitemap index).

        Each leaf sitemap becomes the source label for its pages, which are
        crawled in chunks of ``sitemap.batch_size`` URLs per run.
        """
        root_url = root_url or self.config.sitemap.root_url
        if not root_url:
            raise ValueError("No sitemap URL given and sitemap.root_url is not configured")

        await self.initialize()

        results = []
        self._sitemap_running = True
        try:
            reader = SitemapReader(self.fetcher, self.config.crawler.request_timeout)
            groups = await reader.collect(root_url)

            chunk_size = self.config.sitemap.batch_size
            for sitemap_url, urls in groups:
                if not urls:
                    self.logger.warning(f"No URLs to process in sitemap: {sitemap_url}")
                    continue

                for start in range(0, len(urls), chunk_size):
                    if self.stopped:
                        self.logger.info(f"Sitemap crawl stopped before {sitemap_url} chunk at {start}")
                        return results
                    results.append(await self.run_crawl(sitemap_url, urls[start:start + chunk_size]))
        finally:
            self._sitemap_running = False
            self._stop_requested = False

        return results

    @property
    def stopped(self) -> bool:
        """A stop has been requested for the current (or next) run."""
        return self._stop_requested

    def stop(self):
        """Cancel the current run: no new attempts start; buffered records still flush."""
        self._stop_requested = True
        if self._cancel_event is not None:
            self.logger.info("Stopping crawl...")
            self._cancel_event.set()

    def _log_final_stats(self, result: CrawlResult, indexer: BatchIndexer):
        self.logger.info(f"=== CRAWL COMPLETED: {result.source} ===")
        self.logger.info(f"Succeeded: {result.succeeded}, Failed: {result.failed}, "
                         f"Skipped: {result.skipped}, Cancelled: {result.cancelled}")
        self.logger.info(f"Documents indexed: {result.indexed}")
        self.logger.info(f"Total time: {result.elapsed_time:.2f} seconds")
        self.logger.info(f"Indexer stats: {indexer.get_stats()}")
        if self.fetcher is not None and hasattr(self.fetcher, 'get_stats'):
            self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")

    async def close(self):
        """Close all connections and cleanup resources."""
        try:
            if self.fetcher:
                await self.fetcher.close()

            if self.index_store:
                await self.index_store.close()

            self._initialized = False
            self.logger.info("Crawl orchestrator closed")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
