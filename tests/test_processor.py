import asyncio

import pytest

from conftest import FakeFetcher, page
from crawlindex.crawler.fetcher import HttpStatusError, FetchTimeoutError
from crawlindex.crawler.parser import ContentParser
from crawlindex.crawler.processor import RetryingProcessor, CrawlCancelledError, PageRecord
from crawlindex.crawler.url_frontier import CrawlTarget
from crawlindex.utils.monitoring import CrawlerMonitor


URL = "https://x.test/b"


def make_processor(fetcher, **kwargs):
    kwargs.setdefault('base_delay', 0)
    return RetryingProcessor(fetcher, ContentParser(), **kwargs)


class TestRetryingProcessor:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        fetcher = FakeFetcher({URL: [page(title="B", body="Body text")]})
        record = await make_processor(fetcher).process(CrawlTarget(URL, source_label="docs"))

        assert record.ok
        assert record.title == "B"
        assert record.main_text == "Body text"
        assert record.source_label == "docs"
        assert record.attempts == 1
        assert fetcher.call_counts[URL] == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        fetcher = FakeFetcher({URL: [
            HttpStatusError(URL, 503),
            HttpStatusError(URL, 503),
            page(title="Recovered"),
        ]})
        monitor = CrawlerMonitor()
        record = await make_processor(fetcher, max_attempts=3, monitor=monitor).process(CrawlTarget(URL))

        assert record.ok
        assert record.error is None
        assert record.title == "Recovered"
        assert record.attempts == 3
        assert fetcher.call_counts[URL] == 3
        assert monitor.metrics.get_current_values()['fetch_retries_total'] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [1, 3, 5])
    async def test_exhaustion_makes_exactly_max_attempts(self, max_attempts):
        fetcher = FakeFetcher({URL: [FetchTimeoutError(URL, "Request timeout")]})
        target = CrawlTarget(URL, source_label="docs")
        record = await make_processor(fetcher, max_attempts=max_attempts).process(target)

        assert not record.ok
        assert record.error == "Request timeout"
        assert record.attempts == max_attempts
        assert record.title == ""
        assert record.main_text == ""
        assert record.source_label == "docs"
        assert fetcher.call_counts[URL] == max_attempts
        assert target.retry_count == max_attempts - 1

    @pytest.mark.asyncio
    async def test_permanent_status_is_still_retried(self):
        fetcher = FakeFetcher({URL: [HttpStatusError(URL, 404, "Not Found")]})
        record = await make_processor(fetcher, max_attempts=3).process(CrawlTarget(URL))

        assert fetcher.call_counts[URL] == 3
        assert record.error == "HTTP 404 Not Found"

    @pytest.mark.asyncio
    async def test_empty_error_message_still_reported(self):
        fetcher = FakeFetcher({URL: [RuntimeError()]})
        record = await make_processor(fetcher, max_attempts=1).process(CrawlTarget(URL))
        assert record.error

    def test_backoff_is_linear(self):
        processor = RetryingProcessor(FakeFetcher(), ContentParser(), base_delay=1.5)
        assert [processor.backoff_delay(n) for n in (1, 2, 3)] == [1.5, 3.0, 4.5]

    @pytest.mark.asyncio
    async def test_waits_between_attempts(self, monkeypatch):
        delays = []

        async def record_wait(delay, target):
            delays.append(delay)

        fetcher = FakeFetcher({URL: [HttpStatusError(URL, 500)]})
        processor = make_processor(fetcher, max_attempts=3, base_delay=2)
        monkeypatch.setattr(processor, "_wait", record_wait)

        await processor.process(CrawlTarget(URL))
        assert delays == [2, 4]

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        fetcher = FakeFetcher()
        cancel_event = asyncio.Event()
        cancel_event.set()
        processor = make_processor(fetcher, cancel_event=cancel_event)

        with pytest.raises(CrawlCancelledError):
            await processor.process(CrawlTarget(URL))
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retries(self):
        fetcher = FakeFetcher({URL: [HttpStatusError(URL, 503)]})
        cancel_event = asyncio.Event()
        processor = make_processor(fetcher, max_attempts=5, base_delay=10, cancel_event=cancel_event)

        task = asyncio.create_task(processor.process(CrawlTarget(URL)))
        await asyncio.sleep(0.05)
        cancel_event.set()

        with pytest.raises(CrawlCancelledError):
            await asyncio.wait_for(task, timeout=2)
        assert fetcher.call_counts[URL] == 1


class TestPageRecord:
    def test_failed_record(self):
        record = PageRecord.failed(CrawlTarget(URL, source_label="docs"), "", 3)
        assert not record.ok
        assert record.error == "Unknown error"
        assert record.summary() == {'url': URL, 'title': "", 'error': "Unknown error", 'attempts': 3}

    def test_record_is_immutable(self):
        record = PageRecord(url=URL)
        with pytest.raises(AttributeError):
            record.title = "changed"
