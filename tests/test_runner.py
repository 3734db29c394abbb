import asyncio

import pytest

from conftest import FakeFetcher
from crawlindex.crawler.fetcher import HttpStatusError
from crawlindex.crawler.parser import ContentParser
from crawlindex.crawler.processor import RetryingProcessor
from crawlindex.crawler.runner import ConcurrentCrawlRunner
from crawlindex.crawler.url_frontier import CrawlTarget, URLFrontier


def make_runner(fetcher, concurrency_limit=3, max_attempts=2, cancel_event=None, dispatch_delay=0):
    processor = RetryingProcessor(fetcher, ContentParser(), max_attempts=max_attempts,
                                  base_delay=0, cancel_event=cancel_event)
    return ConcurrentCrawlRunner(processor, concurrency_limit=concurrency_limit,
                                 dispatch_delay=dispatch_delay)


def frontier_of(urls):
    frontier = URLFrontier(source_label="docs")
    for url in urls:
        frontier.offer(url)
    return frontier


class TestConcurrentCrawlRunner:
    @pytest.mark.asyncio
    async def test_processes_every_target(self):
        urls = [f"https://x.test/{i}" for i in range(10)]
        records = await make_runner(FakeFetcher()).run(frontier_of(urls))

        assert sorted(record.url for record in records) == sorted(urls)
        assert all(record.ok for record in records)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 3])
    async def test_concurrency_bound(self, limit):
        fetcher = FakeFetcher(delay=0.02)
        urls = [f"https://x.test/{i}" for i in range(9)]

        await make_runner(fetcher, concurrency_limit=limit).run(frontier_of(urls))

        assert fetcher.max_in_flight == limit
        assert len(fetcher.calls) == 9

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_run(self):
        bad = "https://x.test/bad"
        fetcher = FakeFetcher({bad: [HttpStatusError(bad, 500)]})
        urls = ["https://x.test/1", bad, "https://x.test/2"]

        records = await make_runner(fetcher).run(frontier_of(urls))
        by_url = {record.url: record for record in records}

        assert len(records) == 3
        assert by_url[bad].error == "HTTP 500"
        assert by_url["https://x.test/1"].ok
        assert by_url["https://x.test/2"].ok

    @pytest.mark.asyncio
    async def test_streams_in_completion_order(self):
        slow, fast = "https://x.test/slow", "https://x.test/fast"

        class DelayedFetcher(FakeFetcher):
            async def fetch(self, url, timeout=None):
                await asyncio.sleep(0.1 if url == slow else 0)
                return await super().fetch(url, timeout)

        runner = make_runner(DelayedFetcher(), concurrency_limit=2)
        emitted = [record.url async for record in runner.stream(frontier_of([slow, fast]))]

        assert emitted == [fast, slow]

    @pytest.mark.asyncio
    async def test_accepts_plain_targets(self):
        targets = [CrawlTarget("https://x.test/a", retry_count=0),
                   CrawlTarget("https://x.test/b", retry_count=0)]
        records = await make_runner(FakeFetcher()).run(targets)
        assert {record.url for record in records} == {"https://x.test/a", "https://x.test/b"}

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await make_runner(FakeFetcher()).run(URLFrontier()) == []

    @pytest.mark.asyncio
    async def test_unexpected_processor_error_becomes_failed_record(self):
        runner = make_runner(FakeFetcher())

        async def explode(target):
            raise RuntimeError("boom")

        runner.processor.process = explode
        records = await runner.run(frontier_of(["https://x.test/a"]))

        assert len(records) == 1
        assert records[0].error == "boom"

    @pytest.mark.asyncio
    async def test_cancellation_stops_dispatch(self):
        cancel_event = asyncio.Event()
        fetcher = FakeFetcher(delay=0.05)
        runner = make_runner(fetcher, concurrency_limit=1, cancel_event=cancel_event,
                             dispatch_delay=0.01)
        urls = [f"https://x.test/{i}" for i in range(5)]

        records = []
        async for record in runner.stream(frontier_of(urls)):
            records.append(record)
            cancel_event.set()

        assert len(records) == 1
        assert len(runner.cancelled) == 4
        assert len(fetcher.calls) == 1
