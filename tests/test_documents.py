# tests/test_documents.py
import asyncio

import httpx
import pytest

from conftest import LEARN_HTML, LEARN_URL, FakeFetcher, FixedStoreFactory, memory_config
from core.config import ConfigManager
from core.documents import DocumentRepository, collection_definition
from core.errors import AuthFailed, AuthRequired, FetchError, NotFound, StoreError, UnsupportedSource, ValidationError
from core.extraction import ExtractionPipeline
from core.ingestion import IngestionService
from core.store import MemoryStore, PocketBaseStore


def _services(fetcher=None, config=None):
    repository = DocumentRepository(config or memory_config())
    pipeline = ExtractionPipeline(fetcher=fetcher or FakeFetcher({LEARN_URL: LEARN_HTML}))
    return repository, IngestionService(pipeline, repository)


def test_ensure_collection_is_idempotent():
    repository, _ = _services()

    async def run():
        return await repository.ensure_collection(), await repository.ensure_collection()

    first, second = asyncio.run(run())

    assert first.created is True
    assert second.created is False
    assert first.collection["name"] == "documents"
    assert [f["name"] for f in first.collection["fields"]] == ["title", "content", "metadata", "created", "updated"]


def test_collection_definition_schema():
    definition = collection_definition("docs")
    title = definition["fields"][0]

    assert title["required"] is True and title["max"] == 255
    assert definition["schema"] == definition["fields"]
    assert any("json_extract(metadata, '$.url')" in index for index in definition["indexes"])


def test_upsert_identity():
    fetcher = FakeFetcher({LEARN_URL: LEARN_HTML})
    repository, ingestion = _services(fetcher)

    async def run():
        await repository.ensure_collection()
        first = await ingestion.ingest(LEARN_URL)
        fetcher.pages[LEARN_URL] = LEARN_HTML.replace("two hundred", "three hundred")
        second = await ingestion.ingest(LEARN_URL)
        listing = await repository.list_documents()
        return first, second, listing

    first, second, listing = asyncio.run(run())

    assert first.was_update is False
    assert second.was_update is True
    assert first.document.id == second.document.id
    assert "three hundred" in second.document.content
    assert first.document.created is not None
    assert second.document.updated is not None
    assert listing.total_items == 1


def test_ingest_failure_writes_nothing():
    repository, ingestion = _services(FakeFetcher())

    async def run():
        await repository.ensure_collection()
        with pytest.raises(FetchError):
            await ingestion.ingest(LEARN_URL)
        return await repository.list_documents()

    assert asyncio.run(run()).total_items == 0


def test_list_search_get_delete():
    repository, ingestion = _services()

    async def run():
        await repository.ensure_collection()
        outcome = await ingestion.ingest(LEARN_URL)
        listing = await repository.list_documents(page=1, page_size=10)
        hits = await repository.search("cloud platform")
        misses = await repository.search("kubernetes")
        document = await repository.get(outcome.document.id)
        await repository.delete(outcome.document.id)
        return outcome, listing, hits, misses, document

    outcome, listing, hits, misses, document = asyncio.run(run())

    # listings never carry content
    assert listing.items[0].content == ""
    assert listing.items[0].metadata["url"] == LEARN_URL
    assert hits.total_items == 1
    assert misses.items == []
    assert document.content == outcome.document.content

    with pytest.raises(NotFound):
        asyncio.run(repository.get(outcome.document.id))
    with pytest.raises(NotFound):
        asyncio.run(repository.delete(outcome.document.id))


def test_argument_validation():
    repository, _ = _services()

    with pytest.raises(ValidationError):
        asyncio.run(repository.search("   "))
    with pytest.raises(ValidationError):
        asyncio.run(repository.list_documents(page=0))
    with pytest.raises(ValidationError):
        asyncio.run(repository.list_documents(page_size=101))


def test_collection_info():
    repository, ingestion = _services()

    async def run():
        await repository.ensure_collection()
        await ingestion.ingest(LEARN_URL)
        return await repository.collection_info()

    info = asyncio.run(run())

    assert info.total_records == 1
    assert info.collection["name"] == "documents"


class PickyStore(MemoryStore):
    """MemoryStore that insists on a login, like PocketBase."""

    requires_credentials = True


def test_missing_credentials_is_auth_required():
    config = ConfigManager(environ={})
    repository = DocumentRepository(config, store_factory=FixedStoreFactory(PickyStore()))

    with pytest.raises(AuthRequired):
        asyncio.run(repository.ensure_collection())
    # the store operation still initialized the configuration
    assert config.initialized


def test_ingest_without_credentials_never_fetches():
    fetcher = FakeFetcher({LEARN_URL: LEARN_HTML})
    repository = DocumentRepository(ConfigManager(environ={}), store_factory=FixedStoreFactory(PickyStore()))
    ingestion = IngestionService(ExtractionPipeline(fetcher=fetcher), repository)

    with pytest.raises(AuthRequired):
        asyncio.run(ingestion.ingest(LEARN_URL))
    assert fetcher.calls == []


@pytest.mark.parametrize("url", ["https://example.com/page", "ftp://learn.microsoft.com/x", "not a url"])
def test_bad_url_never_reaches_the_store(url):
    requests = []

    def pocketbase(request):
        requests.append(request)
        return httpx.Response(200, json={"token": "opaque"})

    client = httpx.AsyncClient(base_url="http://pb.test", transport=httpx.MockTransport(pocketbase))
    store = PocketBaseStore("http://pb.test", client=client)
    config = ConfigManager(environ={"POCKETBASE_EMAIL": "a@b.c", "POCKETBASE_PASSWORD": "pw"})
    fetcher = FakeFetcher({})
    ingestion = IngestionService(
        ExtractionPipeline(fetcher=fetcher),
        DocumentRepository(config, store_factory=FixedStoreFactory(store)),
    )

    with pytest.raises((UnsupportedSource, ValidationError)):
        asyncio.run(ingestion.ingest(url))
    assert requests == []
    assert fetcher.calls == []


def test_unsupported_url_without_credentials_names_the_url_problem():
    repository = DocumentRepository(ConfigManager(environ={}), store_factory=FixedStoreFactory(PickyStore()))
    ingestion = IngestionService(ExtractionPipeline(fetcher=FakeFetcher({})), repository)

    with pytest.raises(UnsupportedSource):
        asyncio.run(ingestion.ingest("https://example.com/page"))


def test_rejected_credentials_is_auth_failed():
    config = ConfigManager(environ={"POCKETBASE_EMAIL": "a@b.c", "POCKETBASE_PASSWORD": "wrong"})
    store = PickyStore(identity="a@b.c", secret="right")
    repository = DocumentRepository(config, store_factory=FixedStoreFactory(store))

    with pytest.raises(AuthFailed):
        asyncio.run(repository.list_documents())


def test_store_client_is_rebuilt_after_reload():
    config = memory_config()
    factory = FixedStoreFactory(MemoryStore())
    repository = DocumentRepository(config, store_factory=factory)

    async def run():
        await repository.ensure_collection()
        await repository.ensure_collection()
        config.apply_overrides({"defaultCollection": "other"})
        return await repository.ensure_collection()

    status = asyncio.run(run())

    assert factory.built == 2
    assert status.created is True
    assert status.collection["name"] == "other"


class BrokenCreateStore(MemoryStore):
    async def create_collection(self, definition):
        raise StoreError("validation_invalid_name", status_code=400)


def test_collection_creation_failure_is_store_error():
    repository = DocumentRepository(memory_config(), store_factory=FixedStoreFactory(BrokenCreateStore()))

    with pytest.raises(StoreError) as excinfo:
        asyncio.run(repository.ensure_collection())

    assert "Failed to create collection" in str(excinfo.value)
    assert excinfo.value.status_code == 400


def test_connection_status_never_raises():
    repository = DocumentRepository(ConfigManager(environ={}), store_factory=FixedStoreFactory(PickyStore()))

    status = asyncio.run(repository.connection_status())

    assert status["authenticated"] is False
    assert status["has_credentials"] is False
    assert status["error"]["kind"] == "auth_required"


def test_connection_status_healthy():
    repository, _ = _services()

    async def run():
        await repository.ensure_collection()
        return await repository.connection_status()

    status = asyncio.run(run())

    assert status["authenticated"] is True
    assert status["collection_exists"] is True
    assert status["error"] is None
