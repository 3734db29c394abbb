import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from crawlindex.storage.index_store import (
    AzureSearchIndexStore, FileIndexStore, IndexStoreManager,
    IndexFatalError, IndexRateLimitedError
)
from crawlindex.utils.config import IndexerConfig


def document(doc_id, title="Title"):
    return {'id': doc_id, 'url': f"https://x.test/{doc_id}", 'title': title}


class TestFileIndexStore:
    @pytest.mark.asyncio
    async def test_upsert_and_overwrite(self, tmp_path):
        store = FileIndexStore(str(tmp_path))
        await store.initialize()

        await store.upsert([document("ab01"), document("cd02")])
        await store.upsert([document("ab01", title="Updated")])

        stored = await store.get_document("ab01")
        assert stored['title'] == "Updated"
        assert (tmp_path / 'documents' / 'ab' / 'ab01.json').exists()

        index = json.loads((tmp_path / 'url_index.json').read_text(encoding='utf-8'))
        assert index == {'ab01': "https://x.test/ab01", 'cd02': "https://x.test/cd02"}

        stats = await store.get_stats()
        assert stats['total_upserts'] == 2
        assert stats['documents_on_disk'] == 2

    @pytest.mark.asyncio
    async def test_missing_document(self, tmp_path):
        store = FileIndexStore(str(tmp_path))
        await store.initialize()
        assert await store.get_document("zz99") is None

    @pytest.mark.asyncio
    async def test_document_without_id_is_fatal(self, tmp_path):
        store = FileIndexStore(str(tmp_path))
        await store.initialize()

        with pytest.raises(IndexFatalError) as exc_info:
            await store.upsert([{'url': "https://x.test/no-id"}])
        assert exc_info.value.documents == [{'url': "https://x.test/no-id"}]


class SearchServiceStub:
    """Minimal documents endpoint answering with scripted responses."""

    def __init__(self):
        self.responses = []
        self.requests = []

    async def handle(self, request):
        self.requests.append({
            'index': request.match_info['index'],
            'api_version': request.query.get('api-version'),
            'api_key': request.headers.get('api-key'),
            'body': await request.json(),
        })
        status, body, headers = self.responses.pop(0)
        if isinstance(body, str):
            return web.Response(text=body, status=status, headers=headers)
        return web.json_response(body, status=status, headers=headers)


@pytest_asyncio.fixture
async def search_service():
    stub = SearchServiceStub()
    app = web.Application()
    app.router.add_post("/indexes/{index}/docs/index", stub.handle)

    server = TestServer(app)
    await server.start_server()
    stub.endpoint = str(server.make_url("/"))
    yield stub
    await server.close()


@pytest_asyncio.fixture
async def azure_store(search_service):
    store = AzureSearchIndexStore({
        'endpoint': search_service.endpoint,
        'index_name': "pages",
        'api_key': "secret",
    }, request_timeout=5)
    await store.initialize()
    yield store
    await store.close()


def item(key, status, code, message=None):
    return {'key': key, 'status': status, 'statusCode': code, 'errorMessage': message}


class TestAzureSearchIndexStore:
    @pytest.mark.asyncio
    async def test_upsert_success(self, search_service, azure_store):
        search_service.responses.append((200, {'value': [item("a1", True, 200)]}, None))

        await azure_store.upsert([document("a1")])

        request = search_service.requests[0]
        assert request['index'] == "pages"
        assert request['api_version'] == AzureSearchIndexStore.DEFAULT_API_VERSION
        assert request['api_key'] == "secret"
        assert request['body']['value'][0]['@search.action'] == "mergeOrUpload"
        assert request['body']['value'][0]['id'] == "a1"
        assert (await azure_store.get_stats())['total_documents'] == 1

    @pytest.mark.asyncio
    async def test_throttled_status(self, search_service, azure_store):
        search_service.responses.append((429, {'error': "slow down"}, {'Retry-After': "3"}))

        with pytest.raises(IndexRateLimitedError) as exc_info:
            await azure_store.upsert([document("a1")])
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_partially_throttled_batch(self, search_service, azure_store):
        body = {'value': [item("a1", True, 200), item("a2", False, 503, "throttled")]}
        search_service.responses.append((207, body, None))

        with pytest.raises(IndexRateLimitedError):
            await azure_store.upsert([document("a1"), document("a2")])

    @pytest.mark.asyncio
    async def test_rejected_item_is_fatal(self, search_service, azure_store):
        body = {'value': [item("a1", True, 200), item("a2", False, 400, "bad field")]}
        search_service.responses.append((207, body, None))

        with pytest.raises(IndexFatalError) as exc_info:
            await azure_store.upsert([document("a1"), document("a2")])
        assert "bad field" in str(exc_info.value)
        assert len(exc_info.value.documents) == 2

    @pytest.mark.asyncio
    async def test_bad_request_is_fatal(self, search_service, azure_store):
        search_service.responses.append((400, {'error': {'message': "invalid"}}, None))

        with pytest.raises(IndexFatalError) as exc_info:
            await azure_store.upsert([document("a1")])
        assert "HTTP 400" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_fatal(self, search_service, azure_store):
        search_service.responses.append((200, "<html>gateway page</html>", None))

        with pytest.raises(IndexFatalError) as exc_info:
            await azure_store.upsert([document("a1")])
        assert "unreadable body" in str(exc_info.value)
        assert len(exc_info.value.documents) == 1

    @pytest.mark.asyncio
    async def test_unexpected_body_shape_is_fatal(self, search_service, azure_store):
        search_service.responses.append((200, [item("a1", True, 200)], None))

        with pytest.raises(IndexFatalError):
            await azure_store.upsert([document("a1")])


class TestIndexStoreManager:
    @pytest.mark.asyncio
    async def test_file_backend(self, tmp_path):
        manager = IndexStoreManager(IndexerConfig(type="file", file={'data_directory': str(tmp_path)}))
        await manager.initialize()
        await manager.upsert([document("ab01")])

        assert isinstance(manager.backend, FileIndexStore)
        assert (await manager.get_stats())['total_documents'] == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_upsert_before_initialize(self):
        manager = IndexStoreManager(IndexerConfig())
        with pytest.raises(IndexFatalError):
            await manager.upsert([document("ab01")])

    @pytest.mark.asyncio
    async def test_unknown_backend(self):
        manager = IndexStoreManager(IndexerConfig(type="solr"))
        with pytest.raises(IndexFatalError):
            await manager.initialize()

    @pytest.mark.asyncio
    async def test_azure_backend_uses_configured_timeout(self):
        manager = IndexStoreManager(IndexerConfig(type="azure", request_timeout=7.5, azure={
            'endpoint': "https://search.test/",
            'index_name': "pages",
            'api_key': "secret",
        }))
        await manager.initialize()

        assert isinstance(manager.backend, AzureSearchIndexStore)
        assert manager.backend.request_timeout == 7.5
        assert manager.backend.session.timeout.total == 7.5
        await manager.close()
