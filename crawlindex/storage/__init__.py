"""
Index store layer for the crawl pipeline.
"""

from .index_store import (
    IndexStore, IndexStoreManager, FileIndexStore, AzureSearchIndexStore,
    IndexStoreError, IndexRateLimitedError, IndexFatalError
)
from .batch_indexer import BatchIndexer, document_key

__all__ = [
    'IndexStore', 'IndexStoreManager', 'FileIndexStore', 'AzureSearchIndexStore',
    'IndexStoreError', 'IndexRateLimitedError', 'IndexFatalError',
    'BatchIndexer', 'document_key'
]
