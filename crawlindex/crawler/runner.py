"""
Concurrent crawl runner: drives frontier targets through the processor with a bounded worker pool.
"""

import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional, Union

from .processor import CrawlCancelledError, PageRecord, RetryingProcessor
from .url_frontier import CrawlTarget, URLFrontier


_DONE = object()


class ConcurrentCrawlRunner:
    """
    Runs at most ``concurrency_limit`` processor invocations at once.

    Each worker pulls the next target from the frontier, processes it, emits
    the record as soon as it is ready and then pauses ``dispatch_delay``
    seconds before taking more work. Records come out in completion order.
    """

    def __init__(self, processor: RetryingProcessor, concurrency_limit: int = 3,
                 dispatch_delay: float = 0.1, cancel_event: Optional[asyncio.Event] = None):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        self.processor = processor
        self.concurrency_limit = concurrency_limit
        self.dispatch_delay = dispatch_delay
        self.cancel_event = cancel_event or processor.cancel_event
        self.logger = logging.getLogger(__name__)

        self.cancelled: List[CrawlTarget] = []

    async def stream(self, targets: Union[URLFrontier, Iterable[CrawlTarget]]) -> AsyncIterator[PageRecord]:
        """Yield a PageRecord for every target as it completes."""
        frontier = self._as_frontier(targets)
        results: asyncio.Queue = asyncio.Queue()
        num_workers = min(self.concurrency_limit, max(frontier.count, 1))

        workers = [
            asyncio.create_task(self._worker(f"worker-{i}", frontier, results))
            for i in range(num_workers)
        ]
        self.logger.info(f"Started crawling {frontier.count} targets with {num_workers} workers")

        finished = 0
        try:
            while finished < num_workers:
                item = await results.get()
                if item is _DONE:
                    finished += 1
                    continue
                yield item
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def run(self, targets: Union[URLFrontier, Iterable[CrawlTarget]]) -> List[PageRecord]:
        """Process every target and return the records in completion order."""
        return [record async for record in self.stream(targets)]

    async def _worker(self, worker_id: str, frontier: URLFrontier, results: asyncio.Queue):
        """Worker coroutine that processes targets until the frontier is drained."""
        self.logger.debug(f"Worker {worker_id} started")

        try:
            while not self.cancel_event.is_set():
                target = frontier.next()
                if target is None:
                    break

                try:
                    record = await self.processor.process(target)
                except CrawlCancelledError:
                    self.logger.info(f"Worker {worker_id} stopped: cancelled while processing {target.url}")
                    self.cancelled.append(target)
                    break
                except Exception as e:
                    self.logger.error(f"Worker {worker_id} error on {target.url}: {e}", exc_info=True)
                    record = PageRecord.failed(target, str(e), target.retry_count + 1)

                await results.put(record)

                if self.dispatch_delay > 0:
                    await asyncio.sleep(self.dispatch_delay)

            if self.cancel_event.is_set():
                self._drain_cancelled(frontier)
        finally:
            await results.put(_DONE)
            self.logger.debug(f"Worker {worker_id} finished")

    def _drain_cancelled(self, frontier: URLFrontier):
        while True:
            target = frontier.next()
            if target is None:
                return
            self.cancelled.append(target)

    @staticmethod
    def _as_frontier(targets: Union[URLFrontier, Iterable[CrawlTarget]]) -> URLFrontier:
        if isinstance(targets, URLFrontier):
            return targets

        frontier = URLFrontier()
        for target in targets:
            frontier.offer_target(target)
        return frontier
