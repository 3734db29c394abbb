import asyncio
from collections import defaultdict

import pytest

from crawlindex.crawler.fetcher import FetchResult
from crawlindex.storage.index_store import IndexStore
from crawlindex.utils.config import Config, CrawlerConfig, IndexerConfig


def page(title="Page", body="Hello", meta=""):
    return (f"<html><head><title>{title}</title>{meta}</head>"
            f"<body><p>{body}</p></body></html>")


class FakeFetcher:
    """
    Scripted stand-in for WebFetcher.

    ``responses`` maps a URL to a list of outcomes consumed one per call; an
    outcome is either markup or an exception instance to raise. The last
    outcome repeats once the list is exhausted. Unknown URLs get a generic page.
    """

    def __init__(self, responses=None, delay=0.0):
        self.responses = {url: list(outcomes) for url, outcomes in (responses or {}).items()}
        self.delay = delay
        self.calls = []
        self.call_counts = defaultdict(int)
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch(self, url, timeout=None):
        self.calls.append(url)
        self.call_counts[url] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)

            outcomes = self.responses.get(url)
            if outcomes:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            else:
                outcome = page(title=url)

            if isinstance(outcome, Exception):
                raise outcome
            return FetchResult(url=url, final_url=url, status_code=200, content=outcome)
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True

    def get_stats(self):
        return {'total_requests': len(self.calls)}


class RecordingIndexStore(IndexStore):
    """
    In-memory index store that records every upsert call.

    ``failures`` is a list of exceptions raised by successive upsert calls
    before they start succeeding.
    """

    def __init__(self, failures=None, delay=0.0):
        self.failures = list(failures or [])
        self.delay = delay
        self.batches = []
        self.documents = {}
        self.upsert_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def upsert(self, documents):
        self.upsert_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
            self.batches.append(list(documents))
            for document in documents:
                self.documents[document['id']] = document
        finally:
            self.in_flight -= 1

    async def get_stats(self):
        return {'upsert_calls': self.upsert_calls, 'documents': len(self.documents)}

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def index_store():
    return RecordingIndexStore()


@pytest.fixture
def config(tmp_path):
    """Fast configuration: no backoff or dispatch pauses, file store under tmp_path."""
    return Config(
        crawler=CrawlerConfig(
            user_agent="TestBot/1.0",
            request_timeout=5,
            max_concurrency=3,
            max_retries=3,
            retry_base_delay=0,
            dispatch_delay=0,
        ),
        indexer=IndexerConfig(
            type="file",
            batch_size=25,
            backoff_base=0,
            file={'data_directory': str(tmp_path / 'index')},
        ),
    )
