"""
Index store backends: the remote search index, treated as an upsert-only document store.
Supports Azure AI Search and file-based storage.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any

import aiohttp
from aiohttp import ClientError, ClientTimeout

from ..utils.config import IndexerConfig


class IndexStoreError(Exception):
    """Base exception for index store operations."""
    pass


class IndexRateLimitedError(IndexStoreError):
    """The index store asked us to slow down; the same batch may be retried."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class IndexFatalError(IndexStoreError):
    """The batch was rejected and will not be retried."""

    def __init__(self, message: str, documents: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.documents = documents or []


class IndexStore:
    """Abstract base class for index store backends."""

    async def initialize(self):
        """Initialize the index store backend."""
        raise NotImplementedError

    async def upsert(self, documents: List[Dict[str, Any]]) -> None:
        """
        Insert or overwrite every document, keyed by its ``id``.

        Raises:
            IndexRateLimitedError: the call was throttled and may be retried
            IndexFatalError: any other failure
        """
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get index store statistics."""
        raise NotImplementedError

    async def close(self):
        """Close index store connections."""
        raise NotImplementedError


class FileIndexStore(IndexStore):
    """File-based index store for development and local runs."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_upserts': 0,
            'total_documents': 0,
            'storage_errors': 0,
        }

    async def initialize(self):
        """Create data directory structure."""
        try:
            (self.data_directory / 'documents').mkdir(parents=True, exist_ok=True)
            self.logger.info(f"File index store initialized at {self.data_directory}")
        except OSError as e:
            raise IndexFatalError(f"Failed to initialize file index store: {e}")

    def _get_file_path(self, document_id: str) -> Path:
        """Documents are sharded by the first two characters of their id."""
        return self.data_directory / 'documents' / document_id[:2] / f"{document_id}.json"

    async def upsert(self, documents: List[Dict[str, Any]]) -> None:
        """Write each document to its own file, overwriting any previous version."""
        try:
            index_entries = {}
            for document in documents:
                file_path = self._get_file_path(document['id'])
                file_path.parent.mkdir(parents=True, exist_ok=True)
                with open(file_path, 'w', encoding='utf-8') as f:
                    json.dump(document, f, ensure_ascii=False, indent=2)
                index_entries[document['id']] = document.get('url')

            self._update_index(index_entries)

        except (OSError, KeyError, TypeError) as e:
            self.stats['storage_errors'] += 1
            raise IndexFatalError(f"Error writing documents: {e}", documents) from e

        self.stats['total_upserts'] += 1
        self.stats['total_documents'] += len(documents)
        self.logger.debug(f"Stored {len(documents)} documents under {self.data_directory}")

    def _update_index(self, entries: Dict[str, Optional[str]]):
        """Maintain the id -> url lookup file."""
        index_file = self.data_directory / 'url_index.json'

        if index_file.exists():
            with open(index_file, 'r', encoding='utf-8') as f:
                index = json.load(f)
        else:
            index = {}

        index.update(entries)

        with open(index_file, 'w', encoding='utf-8') as f:
            json.dump(index, f, ensure_ascii=False, indent=2)

    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        """Read a stored document back, or None if it was never upserted."""
        file_path = self._get_file_path(document_id)
        if not file_path.exists():
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        stats = self.stats.copy()
        documents_dir = self.data_directory / 'documents'
        if documents_dir.exists():
            stats['documents_on_disk'] = sum(1 for _ in documents_dir.rglob('*.json'))
        return stats

    async def close(self):
        """Nothing to release for files."""
        self.logger.debug("File index store closed")


class AzureSearchIndexStore(IndexStore):
    """Azure AI Search backend using the documents REST API."""

    DEFAULT_API_VERSION = "2023-11-01"
    THROTTLE_STATUSES = (429, 503)

    def __init__(self, config: Dict[str, Any], request_timeout: float = 60):
        self.endpoint = config['endpoint'].rstrip('/')
        self.index_name = config['index_name']
        self.api_key = config['api_key']
        self.api_version = config.get('api_version', self.DEFAULT_API_VERSION)
        self.request_timeout = request_timeout

        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_upserts': 0,
            'total_documents': 0,
            'rate_limited': 0,
            'failed_upserts': 0,
        }

    @property
    def documents_url(self) -> str:
        return f"{self.endpoint}/indexes/{self.index_name}/docs/index"

    async def initialize(self):
        """Open the HTTP session used for index writes."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={
                    'api-key': self.api_key,
                    'Content-Type': 'application/json',
                }
            )
            self.logger.info(f"Azure Search index store initialized for index: {self.index_name}")

    async def upsert(self, documents: List[Dict[str, Any]]) -> None:
        """Send one mergeOrUpload batch."""
        if self.session is None:
            await self.initialize()

        payload = {
            'value': [{'@search.action': 'mergeOrUpload', **document} for document in documents]
        }

        try:
            async with self.session.post(self.documents_url,
                                         params={'api-version': self.api_version},
                                         json=payload) as response:
                status = response.status

                if status in self.THROTTLE_STATUSES:
                    self.stats['rate_limited'] += 1
                    raise IndexRateLimitedError(
                        f"Index store throttled the request (HTTP {status})",
                        retry_after=self._parse_retry_after(response.headers.get('Retry-After'))
                    )

                if status in (200, 207):
                    try:
                        body = await response.json(content_type=None)
                    except ValueError as e:
                        self.stats['failed_upserts'] += 1
                        raise IndexFatalError(f"Index store returned an unreadable body "
                                              f"(HTTP {status}): {e}", documents) from e
                    self._check_item_results(body, documents)
                    self.stats['total_upserts'] += 1
                    self.stats['total_documents'] += len(documents)
                    return

                text = await response.text()
                self.stats['failed_upserts'] += 1
                raise IndexFatalError(f"Index store rejected the batch (HTTP {status}): {text[:500]}",
                                      documents)

        except asyncio.TimeoutError as e:
            self.stats['failed_upserts'] += 1
            raise IndexFatalError("Index store request timed out", documents) from e

        except ClientError as e:
            self.stats['failed_upserts'] += 1
            raise IndexFatalError(f"Index store request failed: {e}", documents) from e

    def _check_item_results(self, body: Dict[str, Any], documents: List[Dict[str, Any]]):
        """A 207 reports per-document outcomes; a throttled item makes the batch retryable."""
        items = body.get('value') if isinstance(body, dict) else None
        if not isinstance(items, list):
            self.stats['failed_upserts'] += 1
            raise IndexFatalError("Index store response has no per-document results", documents)

        failed = [item for item in items if isinstance(item, dict) and not item.get('status', False)]
        if not failed:
            return

        if all(item.get('statusCode') in self.THROTTLE_STATUSES for item in failed):
            self.stats['rate_limited'] += 1
            raise IndexRateLimitedError(f"{len(failed)} documents throttled by the index store")

        self.stats['failed_upserts'] += 1
        first = failed[0]
        raise IndexFatalError(
            f"{len(failed)} documents rejected by the index store, first: "
            f"{first.get('key')}: {first.get('errorMessage')}",
            documents
        )

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def get_stats(self) -> Dict[str, Any]:
        """Get client-side statistics."""
        return self.stats.copy()

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("Azure Search index store closed")


class IndexStoreManager(IndexStore):
    """Selects and wraps the index store backend named in the configuration."""

    def __init__(self, config: IndexerConfig):
        self.config = config
        self.backend: Optional[IndexStore] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Initialize the appropriate index store backend."""
        backend_type = self.config.type.lower()

        if backend_type == 'azure':
            self.backend = AzureSearchIndexStore(self.config.azure,
                                                 request_timeout=self.config.request_timeout)
        elif backend_type == 'file':
            self.backend = FileIndexStore(self.config.file['data_directory'])
        else:
            raise IndexFatalError(f"Unknown index store type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Index store manager initialized with {backend_type} backend")

    async def upsert(self, documents: List[Dict[str, Any]]) -> None:
        if not self.backend:
            raise IndexFatalError("Index store not initialized", documents)
        await self.backend.upsert(documents)

    async def get_stats(self) -> Dict[str, Any]:
        if not self.backend:
            raise IndexFatalError("Index store not initialized")
        return await self.backend.get_stats()

    async def close(self):
        """Close index store connections."""
        if self.backend:
            await self.backend.close()
            self.logger.info("Index store connections closed")
