# tests/test_store.py
import asyncio
import base64
import json
import time

import httpx
import pytest

from core.errors import AuthFailed, NotFound, StoreError
from core.store import MemoryStore, PocketBaseStore, escape_filter_value

BASE = "http://pb.test"


def _token(claims) -> str:
    def part(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{part({'alg': 'HS256'})}.{part(claims)}.signature"


def _jwt(expires_in: float) -> str:
    return _token({"exp": time.time() + expires_in})


class FakePocketBase:
    """Minimal PocketBase REST double behind httpx.MockTransport."""

    def __init__(self, legacy=False, password="pw"):
        self.legacy = legacy
        self.password = password
        self.token = _jwt(3600)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("auth-with-password"):
            if self.legacy and "_superusers" in path:
                return httpx.Response(404, json={"message": "Missing collection context."})
            body = json.loads(request.content)
            if body["password"] != self.password:
                return httpx.Response(400, json={"message": "Failed to authenticate."})
            return httpx.Response(200, json={"token": self.token})

        if request.headers.get("authorization") != self.token:
            return httpx.Response(401, json={"message": "The request requires valid record authorization token."})
        if path == "/api/collections/documents/records" and request.method == "GET":
            return httpx.Response(200, json={
                "page": 1, "perPage": 1, "totalItems": 1, "totalPages": 1,
                "items": [{"id": "abc123", "title": "Doc"}],
            })
        if path == "/api/collections/documents/records/gone":
            return httpx.Response(404, json={"message": "The requested resource wasn't found."})
        if path == "/api/collections/documents/records/abc123" and request.method == "DELETE":
            return httpx.Response(204)
        if path == "/api/collections/documents":
            return httpx.Response(200, json={"id": "col1", "name": "documents"})
        return httpx.Response(500, json={"message": "boom"})


def _store(fake):
    client = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(fake))
    return PocketBaseStore(BASE, client=client)


def test_superuser_auth_and_token_header():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        assert await store.authenticate("admin@example.com", "pw") is True
        return await store.get_collection("documents")

    collection = asyncio.run(run())

    assert collection["name"] == "documents"
    assert store.is_authenticated
    assert fake.requests[0].url.path == "/api/collections/_superusers/auth-with-password"
    assert fake.requests[1].headers["authorization"] == fake.token


def test_legacy_admin_auth_fallback():
    fake = FakePocketBase(legacy=True)
    store = _store(fake)

    assert asyncio.run(store.authenticate("admin@example.com", "pw")) is True
    assert [r.url.path for r in fake.requests] == [
        "/api/collections/_superusers/auth-with-password",
        "/api/admins/auth-with-password",
    ]


def test_rejected_credentials():
    store = _store(FakePocketBase())

    assert asyncio.run(store.authenticate("admin@example.com", "wrong")) is False
    assert store.is_authenticated is False


def test_expired_token_is_not_valid():
    fake = FakePocketBase()
    fake.token = _jwt(-10)
    store = _store(fake)

    asyncio.run(store.authenticate("admin@example.com", "pw"))

    assert store.is_authenticated is False


@pytest.mark.parametrize("claims", [["not", "an", "object"], {"exp": [1]}, {"exp": "soon"}, "text"])
def test_unreadable_claims_are_trusted(claims):
    fake = FakePocketBase()
    fake.token = _token(claims)
    store = _store(fake)

    asyncio.run(store.authenticate("admin@example.com", "pw"))

    assert store.is_authenticated is True


def test_record_ids_stay_inside_their_collection():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        await store.authenticate("a", "pw")
        with pytest.raises(StoreError):
            await store.delete_record("documents", "../../documents")
        with pytest.raises(StoreError):
            await store.get_record("documents", "../../../settings")

    asyncio.run(run())

    deleted, fetched = fake.requests[-2:]
    assert deleted.method == "DELETE"
    assert deleted.url.raw_path == b"/api/collections/documents/records/..%2F..%2Fdocuments"
    assert fetched.url.raw_path == b"/api/collections/documents/records/..%2F..%2F..%2Fsettings"
    assert not any(r.url.path in ("/api/collections/documents", "/api/settings") for r in fake.requests)


def test_collection_names_are_quoted():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        await store.authenticate("a", "pw")
        with pytest.raises(StoreError):
            await store.get_collection("../settings")

    asyncio.run(run())

    assert fake.requests[-1].url.raw_path == b"/api/collections/..%2Fsettings"


def test_find_first_builds_escaped_filter():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        await store.authenticate("a", "pw")
        return await store.find_first("documents", "metadata.url", 'https://x/"quoted"')

    record = asyncio.run(run())

    assert record["id"] == "abc123"
    params = fake.requests[-1].url.params
    assert params["filter"] == 'metadata.url = "https://x/\\"quoted\\""'
    assert params["perPage"] == "1"


def test_search_filter_covers_every_field():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        await store.authenticate("a", "pw")
        await store.search_records("documents", "azure", ("title", "content"), limit=5)

    asyncio.run(run())

    params = fake.requests[-1].url.params
    assert params["filter"] == 'title ~ "azure" || content ~ "azure"'
    assert params["sort"] == "-created"
    assert params["perPage"] == "5"


def test_status_mapping():
    store = _store(FakePocketBase())

    async def run(coro):
        await store.authenticate("a", "pw")
        return await coro

    with pytest.raises(NotFound):
        asyncio.run(run(store.get_record("documents", "gone")))
    with pytest.raises(StoreError) as excinfo:
        asyncio.run(run(store.update_record("documents", "other", {"title": "x"})))
    assert excinfo.value.status_code == 500
    assert asyncio.run(run(store.delete_record("documents", "abc123"))) is None


def test_unauthorized_clears_token():
    fake = FakePocketBase()
    store = _store(fake)

    async def run():
        await store.authenticate("a", "pw")
        fake.token = "rotated"
        await store.get_collection("documents")

    with pytest.raises(AuthFailed):
        asyncio.run(run())
    assert store.is_authenticated is False


def test_connection_failure_is_store_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(refuse))
    store = PocketBaseStore(BASE, client=client)

    with pytest.raises(StoreError):
        asyncio.run(store.authenticate("a", "pw"))


def test_escape_filter_value():
    assert escape_filter_value('a"b\\c') == 'a\\"b\\\\c'


# -----------------------------------------------------------------------------
# MemoryStore
# -----------------------------------------------------------------------------
def test_memory_store_requires_collection(memory_store):
    with pytest.raises(NotFound):
        asyncio.run(memory_store.create_record("documents", {"title": "x"}))


def test_memory_store_crud_and_listing(memory_store):
    async def run():
        await memory_store.create_collection({"name": "documents"})
        first = await memory_store.create_record("documents", {
            "title": "First", "content": "alpha", "metadata": {"url": "u1"}, "created": "2025-01-01T00:00:00.000Z",
        })
        await memory_store.create_record("documents", {
            "title": "Second", "content": "beta", "metadata": {"url": "u2"}, "created": "2025-01-02T00:00:00.000Z",
        })
        listing = await memory_store.list_records("documents", page=1, per_page=1, fields=("id", "title"))
        found = await memory_store.find_first("documents", "metadata.url", "u1")
        search = await memory_store.search_records("documents", "ALPHA", ("title", "content"))
        updated = await memory_store.update_record("documents", first["id"], {"title": "First v2"})
        await memory_store.delete_record("documents", first["id"])
        return first, listing, found, search, updated

    first, listing, found, search, updated = asyncio.run(run())

    assert listing["totalItems"] == 2
    assert listing["totalPages"] == 2
    assert listing["items"] == [{"id": listing["items"][0]["id"], "title": "Second"}]
    assert found["id"] == first["id"]
    assert [item["title"] for item in search["items"]] == ["First"]
    assert updated["id"] == first["id"]
    assert updated["content"] == "alpha"
    with pytest.raises(NotFound):
        asyncio.run(memory_store.get_record("documents", first["id"]))


def test_memory_store_duplicate_collection(memory_store):
    asyncio.run(memory_store.create_collection({"name": "documents"}))

    with pytest.raises(StoreError):
        asyncio.run(memory_store.create_collection({"name": "documents"}))
