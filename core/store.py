# =============================================================================
# core/store.py  -  Document Store Clients
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Talks to the document store.  The rest of the system only needs five
#   verbs against a named collection: get by id, find by filter, create,
#   update, delete (plus collection lookup/creation and a paged listing).
#
# DATA SOURCE TOGGLE:
#   STORE_BACKEND=pocketbase (default)  -> PocketBaseStore, the REST API via httpx
#   STORE_BACKEND=memory                -> MemoryStore, an in-process dict
#
#   Both backends honour the same contract and return records in the same
#   PocketBase JSON shape:
#
#       {"page": 1, "perPage": 20, "totalItems": 42, "totalPages": 3,
#        "items": [{"id": "...", "title": "...", ...}, ...]}
#
#   so core/documents.py never knows which one it is talking to.
#
# ERRORS:
#   404 -> NotFound, 401/403 -> AuthFailed, anything else (including
#   connection failures) -> StoreError.  No timeouts are applied to store calls.
# =============================================================================

import base64
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httpx

from core.errors import AuthFailed, ExtractorError, NotFound, StoreError
from core.models import Configuration, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


def escape_filter_value(value: str) -> str:
    """Quote a value for use inside a PocketBase filter string literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _segment(value: str) -> str:
    """Quote one URL path segment (ids never escape their path)."""
    return quote(value, safe="")


def _lookup(record: dict, dotted: str) -> Any:
    current: Any = record
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _page(items: list[dict], page: int, per_page: int, total: int) -> dict:
    total_pages = (total + per_page - 1) // per_page if per_page else 0
    return {
        "page": page,
        "perPage": per_page,
        "totalItems": total,
        "totalPages": total_pages,
        "items": items,
    }


class DocumentStore(ABC):
    """Contract shared by every store backend."""

    # False for backends that work without a login (MemoryStore).
    requires_credentials: bool = True

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        """Validity flag of the current login."""

    @abstractmethod
    async def authenticate(self, identity: str, secret: str) -> bool:
        """Log in.  False when the store rejects the credentials."""

    @abstractmethod
    async def get_collection(self, name: str) -> dict: ...

    @abstractmethod
    async def create_collection(self, definition: dict) -> dict: ...

    @abstractmethod
    async def list_records(
        self,
        collection: str,
        page: int = 1,
        per_page: int = 20,
        sort: str = "-created",
        fields: Optional[Iterable[str]] = None,
    ) -> dict: ...

    @abstractmethod
    async def find_first(self, collection: str, field: str, value: str) -> Optional[dict]:
        """First record whose (dotted) ``field`` equals ``value``."""

    @abstractmethod
    async def search_records(
        self, collection: str, text: str, fields: Iterable[str], limit: int = 50
    ) -> dict:
        """Records where any of ``fields`` contains ``text`` (case-insensitive)."""

    @abstractmethod
    async def get_record(self, collection: str, record_id: str) -> dict: ...

    @abstractmethod
    async def create_record(self, collection: str, data: dict) -> dict: ...

    @abstractmethod
    async def update_record(self, collection: str, record_id: str, data: dict) -> dict: ...

    @abstractmethod
    async def delete_record(self, collection: str, record_id: str) -> None: ...

    async def aclose(self) -> None:
        return None


# =============================================================================
# LIVE BACKEND: PocketBase REST API
# =============================================================================
def _token_is_valid(token: Optional[str]) -> bool:
    """Check the ``exp`` claim of a PocketBase JWT (no signature check)."""
    if not token:
        return False
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (IndexError, ValueError):
        # Opaque token: trust it until the store says otherwise.
        return True
    try:
        expires = claims.get("exp")
        return expires is None or float(expires) > time.time()
    except (AttributeError, TypeError, ValueError):
        # Not a JWT we understand: trust it until the store says otherwise.
        return True


class PocketBaseStore(DocumentStore):
    """PocketBase over its REST API.

    Logs in as a superuser (PocketBase >= 0.23) and falls back to the legacy
    admin endpoint on older servers.
    """

    AUTH_PATHS = (
        "/api/collections/_superusers/auth-with-password",
        "/api/admins/auth-with-password",
    )

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=DEFAULT_HEADERS,
            timeout=None,
        )
        self._token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return _token_is_valid(self._token)

    async def authenticate(self, identity: str, secret: str) -> bool:
        payload = {"identity": identity, "password": secret}
        for path in self.AUTH_PATHS:
            try:
                response = await self._client.post(path, json=payload)
            except httpx.HTTPError as exc:
                raise StoreError(f"Cannot reach PocketBase at {self.base_url}: {exc}", cause=exc) from exc
            if response.status_code == 404:
                # Endpoint not available on this PocketBase version.
                continue
            if response.is_success:
                self._token = response.json().get("token")
                return bool(self._token)
            logger.debug(f"PocketBase rejected credentials at {path} (HTTP {response.status_code})")
            break
        self._token = None
        return False

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        payload: Optional[dict] = None,
    ) -> Any:
        headers = {"Authorization": self._token} if self._token else None
        try:
            response = await self._client.request(method, path, params=params, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise StoreError(f"PocketBase request failed ({method} {path}): {exc}", cause=exc) from exc

        if response.status_code == 204:
            return None
        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise StoreError(f"PocketBase returned invalid JSON for {method} {path}", cause=exc) from exc
        raise self._error_for(response, method, path)

    def _error_for(self, response: httpx.Response, method: str, path: str) -> ExtractorError:
        try:
            details = response.json().get("message") or response.text[:200]
        except ValueError:
            details = response.text[:200]
        status = response.status_code
        if status == 404:
            return NotFound(f"Not found: {details}", status_code=status)
        if status in (401, 403):
            self._token = None
            return AuthFailed(f"PocketBase refused {method} {path}: {details}", status_code=status)
        return StoreError(f"PocketBase {method} {path} failed: {details}", status_code=status)

    # --- collections ---------------------------------------------------------
    async def get_collection(self, name: str) -> dict:
        return await self._request("GET", f"/api/collections/{_segment(name)}")

    async def create_collection(self, definition: dict) -> dict:
        return await self._request("POST", "/api/collections", payload=definition)

    # --- records -------------------------------------------------------------
    def _records(self, collection: str, record_id: Optional[str] = None) -> str:
        path = f"/api/collections/{_segment(collection)}/records"
        return f"{path}/{_segment(record_id)}" if record_id else path

    async def list_records(self, collection, page=1, per_page=20, sort="-created", fields=None) -> dict:
        params = {"page": page, "perPage": per_page, "sort": sort}
        if fields:
            params["fields"] = ",".join(fields)
        return await self._request("GET", self._records(collection), params=params)

    async def find_first(self, collection: str, field: str, value: str) -> Optional[dict]:
        params = {
            "page": 1,
            "perPage": 1,
            "skipTotal": 1,
            "filter": f'{field} = "{escape_filter_value(value)}"',
        }
        result = await self._request("GET", self._records(collection), params=params)
        items = (result or {}).get("items") or []
        return items[0] if items else None

    async def search_records(self, collection, text, fields, limit=50) -> dict:
        quoted = escape_filter_value(text)
        params = {
            "page": 1,
            "perPage": limit,
            "sort": "-created",
            "filter": " || ".join(f'{field} ~ "{quoted}"' for field in fields),
        }
        return await self._request("GET", self._records(collection), params=params)

    async def get_record(self, collection: str, record_id: str) -> dict:
        return await self._request("GET", self._records(collection, record_id))

    async def create_record(self, collection: str, data: dict) -> dict:
        return await self._request("POST", self._records(collection), payload=data)

    async def update_record(self, collection: str, record_id: str, data: dict) -> dict:
        return await self._request("PATCH", self._records(collection, record_id), payload=data)

    async def delete_record(self, collection: str, record_id: str) -> None:
        await self._request("DELETE", self._records(collection, record_id))

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# MOCK BACKEND: in-process store
# =============================================================================
class MemoryStore(DocumentStore):
    """Dict-backed store with PocketBase semantics.

    Collections must be created before records are written, exactly like
    PocketBase.  Nothing survives the process.
    """

    requires_credentials = False

    def __init__(self, identity: Optional[str] = None, secret: Optional[str] = None):
        self._identity = identity
        self._secret = secret
        self._authenticated = False
        self.collections: dict[str, dict] = {}
        self.records: dict[str, dict[str, dict]] = {}

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    async def authenticate(self, identity: str, secret: str) -> bool:
        if self._identity is None:
            self._authenticated = True
        else:
            self._authenticated = (identity, secret) == (self._identity, self._secret)
        return self._authenticated

    def _collection(self, name: str) -> dict[str, dict]:
        if name not in self.collections:
            raise NotFound(f"Missing collection context: {name!r}", status_code=404)
        return self.records[name]

    async def get_collection(self, name: str) -> dict:
        self._collection(name)
        return dict(self.collections[name])

    async def create_collection(self, definition: dict) -> dict:
        name = definition["name"]
        if name in self.collections:
            raise StoreError(f"Collection {name!r} already exists", status_code=400)
        now = utc_timestamp()
        collection = {"id": uuid.uuid4().hex[:15], "created": now, "updated": now, **definition}
        self.collections[name] = collection
        self.records[name] = {}
        return dict(collection)

    async def list_records(self, collection, page=1, per_page=20, sort="-created", fields=None) -> dict:
        records = self._sorted(self._collection(collection).values(), sort)
        start = (page - 1) * per_page
        items = records[start:start + per_page]
        if fields:
            wanted = set(fields)
            items = [{k: v for k, v in item.items() if k in wanted} for item in items]
        return _page(items, page, per_page, len(records))

    async def find_first(self, collection: str, field: str, value: str) -> Optional[dict]:
        for record in self._collection(collection).values():
            if _lookup(record, field) == value:
                return dict(record)
        return None

    async def search_records(self, collection, text, fields, limit=50) -> dict:
        needle = text.lower()
        matches = [
            record
            for record in self._collection(collection).values()
            if any(needle in str(_lookup(record, field) or "").lower() for field in fields)
        ]
        matches = self._sorted(matches, "-created")
        return _page(matches[:limit], 1, limit, len(matches))

    async def get_record(self, collection: str, record_id: str) -> dict:
        record = self._collection(collection).get(record_id)
        if record is None:
            raise NotFound(f"The requested resource wasn't found: {record_id!r}", status_code=404)
        return dict(record)

    async def create_record(self, collection: str, data: dict) -> dict:
        records = self._collection(collection)
        record = {"id": uuid.uuid4().hex[:15], "collectionName": collection, **data}
        records[record["id"]] = record
        return dict(record)

    async def update_record(self, collection: str, record_id: str, data: dict) -> dict:
        records = self._collection(collection)
        if record_id not in records:
            raise NotFound(f"The requested resource wasn't found: {record_id!r}", status_code=404)
        records[record_id] = {**records[record_id], **data, "id": record_id}
        return dict(records[record_id])

    async def delete_record(self, collection: str, record_id: str) -> None:
        records = self._collection(collection)
        if records.pop(record_id, None) is None:
            raise NotFound(f"The requested resource wasn't found: {record_id!r}", status_code=404)

    @staticmethod
    def _sorted(records: Iterable[dict], sort: str) -> list[dict]:
        key = sort.lstrip("-+")
        return sorted(records, key=lambda r: str(r.get(key) or ""), reverse=sort.startswith("-"))


# =============================================================================
# Backend selection
# =============================================================================
class StoreFactory:
    """Build a store client for a Configuration.

    PocketBase clients are built per Configuration (they carry the URL and
    login).  The memory backend is one instance for the whole process, so
    reconfiguration does not wipe its data.
    """

    def __init__(self):
        self._memory: Optional[MemoryStore] = None

    def __call__(self, config: Configuration) -> DocumentStore:
        if config.store_backend == "memory":
            if self._memory is None:
                self._memory = MemoryStore()
            return self._memory
        if config.store_backend != "pocketbase":
            logger.warning(f"Unknown STORE_BACKEND {config.store_backend!r}, using pocketbase")
        return PocketBaseStore(config.store_url)
