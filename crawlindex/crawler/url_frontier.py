"""
URL Frontier: the per-run deduplication authority and FIFO queue of pages to crawl.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Set
from urllib.parse import urlparse, urlunparse


def normalize_url(url: str) -> str:
    """
    Canonicalize a URL for equality comparison.

    Scheme and host are lower-cased, the fragment is dropped and a trailing
    slash is removed from the path (the root path normalizes to empty).
    Path and query keep their case.
    """
    url = url.strip()
    try:
        parsed = urlparse(url)
    except ValueError:
        return url

    path = parsed.path.rstrip('/')

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        parsed.query,
        ''
    ))


def is_crawlable_url(url: str) -> bool:
    """Only absolute http(s) URLs are crawled."""
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme.lower() in ('http', 'https') and bool(parsed.netloc)


@dataclass
class CrawlTarget:
    """A URL scheduled for crawling within one run."""
    url: str
    source_label: str = ""
    retry_count: int = 0
    parent_url: Optional[str] = None
    depth: int = 0

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)


class URLFrontier:
    """
    Owns the set of URLs seen and the queue of URLs pending for one crawl run.

    A URL is accepted at most once per run (after normalization) unless it
    is explicitly offered as a retry. Pending targets are handed out in
    insertion order. All operations take a single lock, so the frontier can
    be shared by coroutines and threads alike.
    """

    def __init__(self, source_label: str = ""):
        self.source_label = source_label
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._seen: Set[str] = set()
        self._pending: Deque[CrawlTarget] = deque()

    def offer(self, url: str, parent_url: Optional[str] = None, depth: int = 0,
              is_retry: bool = False) -> bool:
        """
        Offer a URL to the frontier.
        Returns True if it was queued, False if it was already seen.
        """
        return self.offer_target(CrawlTarget(
            url=url.strip(),
            source_label=self.source_label,
            parent_url=parent_url,
            depth=depth
        ), is_retry=is_retry)

    def offer_target(self, target: CrawlTarget, is_retry: bool = False) -> bool:
        """Queue an already-built target under the same deduplication rule as offer()."""
        key = target.normalized_url

        with self._lock:
            if key in self._seen and not is_retry:
                self.logger.debug(f"Skipping already seen URL: {target.url}")
                return False

            self._seen.add(key)
            self._pending.append(target)

        self.logger.debug(f"Added URL to frontier: {target.url}")
        return True

    def requeue(self, target: CrawlTarget) -> None:
        """Put a target back at the end of the queue as an explicit retry."""
        with self._lock:
            target.retry_count += 1
            self._seen.add(target.normalized_url)
            self._pending.append(target)

    def next(self) -> Optional[CrawlTarget]:
        """Pop the oldest pending target, or None when the queue is empty."""
        with self._lock:
            if not self._pending:
                return None
            return self._pending.popleft()

    @property
    def count(self) -> int:
        """Number of targets still pending."""
        with self._lock:
            return len(self._pending)

    def __len__(self) -> int:
        return self.count

    def is_seen(self, url: str) -> bool:
        with self._lock:
            return normalize_url(url) in self._seen

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def get_stats(self) -> dict:
        """Get frontier statistics."""
        with self._lock:
            return {
                'total_queued': len(self._pending),
                'total_seen': len(self._seen),
            }
