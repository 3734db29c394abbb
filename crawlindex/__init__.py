"""
Crawl Index

Crawls web pages, extracts their text and metadata, and upserts the
results into a remote search index.
"""

__version__ = "1.0.0"
__description__ = "A crawl-extract-index pipeline for feeding a full-text search service"
