"""
Crawl pipeline components.
"""

from .url_frontier import URLFrontier, CrawlTarget, normalize_url
from .fetcher import WebFetcher, FetchResult, FetchError
from .parser import ContentParser, PageContent
from .processor import RetryingProcessor, PageRecord, CrawlCancelledError
from .runner import ConcurrentCrawlRunner
from .sitemap import SitemapReader, SitemapDocument, parse_sitemap
from .request import CrawlRequest, InvalidCrawlRequestError

__all__ = [
    'URLFrontier', 'CrawlTarget', 'normalize_url',
    'WebFetcher', 'FetchResult', 'FetchError',
    'ContentParser', 'PageContent',
    'RetryingProcessor', 'PageRecord', 'CrawlCancelledError',
    'ConcurrentCrawlRunner',
    'SitemapReader', 'SitemapDocument', 'parse_sitemap',
    'CrawlRequest', 'InvalidCrawlRequestError'
]
