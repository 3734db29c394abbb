"""
Batch indexer: buffers page records and upserts them to the index store in bounded batches.
"""

import asyncio
import hashlib
import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .index_store import IndexFatalError, IndexRateLimitedError, IndexStore
from ..crawler.processor import PageRecord
from ..crawler.url_frontier import normalize_url
from ..utils.monitoring import CrawlerMonitor


def document_key(url: str) -> str:
    """Index document id: SHA-512 hex digest of the normalized URL."""
    return hashlib.sha512(normalize_url(url).encode('utf-8')).hexdigest()


def record_to_document(record: PageRecord) -> Dict[str, Any]:
    """Shape a page record as an index document."""
    return {
        'id': document_key(record.url),
        'url': record.url,
        'title': record.title,
        'metaTags': json.dumps(record.meta_tags, ensure_ascii=False),
        'mainContentHtml': record.html_fragment,
        'mainContentText': record.main_text,
        'source': record.source_label,
        'crawledAt': datetime.now(timezone.utc).isoformat(),
    }


class BatchIndexer:
    """
    Buffers records and writes them to the index store ``batch_size`` at a time.

    Draining is serialized by a single lock, so at most one flush call is in
    flight and concurrent producers never cause partial drains. Rate-limited
    writes are retried with ``backoff_base * 2**attempt`` second delays; any
    other failure drops the batch and raises IndexFatalError carrying the
    dropped documents.
    """

    def __init__(self, store: IndexStore, batch_size: int = 25,
                 max_concurrent_requests: int = 10, max_retries: int = 10,
                 backoff_base: float = 1.0, monitor: Optional[CrawlerMonitor] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.store = store
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        self._queue: Deque[Dict[str, Any]] = deque()
        self._indexing_lock = asyncio.Lock()
        self._rate_limiter = asyncio.Semaphore(max_concurrent_requests)

        self.stats = {
            'documents_added': 0,
            'documents_indexed': 0,
            'documents_lost': 0,
            'batches_flushed': 0,
            'rate_limit_retries': 0,
        }

    @property
    def pending(self) -> int:
        """Documents buffered and not yet flushed."""
        return len(self._queue)

    async def add(self, record: PageRecord) -> None:
        """Buffer one record, flushing if the batch is full."""
        self._queue.append(record_to_document(record))
        self.stats['documents_added'] += 1
        await self.flush_if_necessary()

    async def flush_if_necessary(self) -> int:
        """Flush one full batch if enough documents are buffered. Returns documents written."""
        if len(self._queue) < self.batch_size:
            return 0

        async with self._indexing_lock:
            # Another producer may have drained the queue while we waited
            if len(self._queue) < self.batch_size:
                return 0
            return await self._flush_batch()

    async def flush_final(self) -> int:
        """
        Flush everything still buffered. Returns the number of documents left
        in the buffer afterwards, which should be zero.

        A failed batch does not stop the remaining ones from being flushed;
        failures are raised together once the buffer has been drained.
        """
        errors: List[IndexFatalError] = []
        async with self._indexing_lock:
            while self._queue:
                try:
                    await self._flush_batch()
                except IndexFatalError as e:
                    errors.append(e)

        residue = len(self._queue)
        if residue:
            self.logger.error(f"Indexing queue is still not empty at the end: "
                              f"{residue} documents left")

        if errors:
            lost = [document for error in errors for document in error.documents]
            raise IndexFatalError(f"{len(errors)} batches failed during final flush, "
                                  f"first: {errors[0]}", lost)
        return residue

    async def _flush_batch(self) -> int:
        """Drain up to batch_size documents and write them. Caller holds the lock."""
        count = min(len(self._queue), self.batch_size)
        batch = [self._queue.popleft() for _ in range(count)]
        self.logger.info(f"Indexing batch of {count}")

        try:
            await self._upsert_with_retry(batch)
        except IndexFatalError as e:
            self._record_lost(batch)
            raise IndexFatalError(str(e), batch) from e
        except IndexRateLimitedError as e:
            self._record_lost(batch)
            raise IndexFatalError(f"Still rate limited after {self.max_retries} attempts: {e}",
                                  batch) from e
        except Exception as e:
            self._record_lost(batch)
            raise IndexFatalError(f"Unexpected index store error: {e!r}", batch) from e

        self.stats['documents_indexed'] += count
        self.stats['batches_flushed'] += 1
        if self.monitor:
            self.monitor.record_batch_indexed(count)
            self.monitor.update_pending(len(self._queue))
        return count

    async def _upsert_with_retry(self, batch: List[Dict[str, Any]]):
        for attempt in range(self.max_retries):
            try:
                async with self._rate_limiter:
                    await self.store.upsert(batch)
                return
            except IndexRateLimitedError as e:
                if attempt == self.max_retries - 1:
                    raise

                self.stats['rate_limit_retries'] += 1
                if self.monitor:
                    self.monitor.record_rate_limited()

                delay = self.backoff_delay(attempt)
                if e.retry_after is not None:
                    delay = max(delay, e.retry_after)
                self.logger.warning(f"Index store rate limited (attempt {attempt + 1}/"
                                    f"{self.max_retries}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt."""
        return self.backoff_base * (2 ** attempt)

    def _record_lost(self, batch: List[Dict[str, Any]]):
        self.stats['documents_lost'] += len(batch)
        if self.monitor:
            self.monitor.record_error('index_fatal')
        self.logger.error(f"Dropped batch of {len(batch)} documents after index store failure; "
                          f"re-submit their URLs to index them")

    def get_stats(self) -> Dict[str, int]:
        stats = self.stats.copy()
        stats['pending'] = len(self._queue)
        return stats
