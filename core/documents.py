# =============================================================================
# core/documents.py  -  Document Repository
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Adapts the raw store client (core/store.py) to the operations the tools
#   need: ensure the collection exists, list, search, get, delete, and the
#   find-by-url / create / update trio used by ingestion.
#
#   It also owns the login: the store client is rebuilt whenever the
#   ConfigManager hands out a new Configuration (after a reload), and
#   authentication is (re)done on demand before every operation.
#
# COLLECTION SCHEMA:
#   title     text, required, max 255 characters
#   content   text, required
#   metadata  json (metadata.url is the identity key)
#   created   date
#   updated   date
#
#   Indexes on title, created and metadata.url.
# =============================================================================

import logging
import time
from typing import Any, Callable, Optional

import anyio

from core.config import ConfigManager
from core.errors import AuthFailed, AuthRequired, ExtractorError, NotFound, StoreError, ValidationError
from core.models import (
    CollectionInfo,
    CollectionStatus,
    Configuration,
    Document,
    ExtractionResult,
    RecordPage,
    utc_timestamp,
)
from core.store import DocumentStore, StoreFactory

logger = logging.getLogger(__name__)

# Listing never ships the (potentially huge) content field.
LIST_FIELDS = ("id", "title", "metadata", "created", "updated")
SEARCH_FIELDS = ("title", "content")
URL_FIELD = "metadata.url"

MAX_PAGE_SIZE = 100


def collection_definition(name: str) -> dict[str, Any]:
    """Store-side definition of the documents collection.

    Field options are sent both nested (PocketBase < 0.23 "schema") and flat
    (PocketBase >= 0.23 "fields"); each version ignores the other shape.
    """
    fields = [
        {"name": "title", "type": "text", "required": True, "max": 255, "options": {"max": 255}},
        {"name": "content", "type": "text", "required": True, "options": {}},
        {"name": "metadata", "type": "json", "required": False, "maxSize": 2000000, "options": {"maxSize": 2000000}},
        {"name": "created", "type": "date", "required": False, "options": {}},
        {"name": "updated", "type": "date", "required": False, "options": {}},
    ]
    return {
        "name": name,
        "type": "base",
        "schema": fields,
        "fields": fields,
        "indexes": [
            f"CREATE INDEX idx_{name}_title ON {name} (title)",
            f"CREATE INDEX idx_{name}_created ON {name} (created)",
            f"CREATE INDEX idx_{name}_url ON {name} (json_extract(metadata, '$.url'))",
        ],
    }


def _to_page(raw: dict) -> RecordPage:
    items = raw.get("items") or []
    return RecordPage(
        page=raw.get("page", 1),
        per_page=raw.get("perPage", len(items)),
        total_items=raw.get("totalItems", len(items)),
        total_pages=raw.get("totalPages", 1),
        items=[Document.from_record(item) for item in items],
    )


class DocumentRepository:
    """Collection operations on top of a lazily configured store client.

    Args:
        config: The process ConfigManager.  Nothing is read from it until
            the first operation.
        store_factory: Builds a store client for a Configuration.  Defaults
            to :class:`core.store.StoreFactory` (honours STORE_BACKEND).
    """

    def __init__(
        self,
        config: ConfigManager,
        store_factory: Optional[Callable[[Configuration], DocumentStore]] = None,
    ):
        self.config = config
        self._store_factory = store_factory or StoreFactory()
        self._store: Optional[DocumentStore] = None
        self._store_config: Optional[Configuration] = None
        self.started_at = time.time()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------
    def _client_for(self, config: Configuration) -> tuple[DocumentStore, Optional[DocumentStore]]:
        """Return the client for ``config`` and the stale one it replaced."""
        if self._store is not None and self._store_config is config:
            return self._store, None
        stale = self._store
        self._store = self._store_factory(config)
        self._store_config = config
        if stale is self._store:
            stale = None
        return self._store, stale

    async def aclose(self) -> None:
        """Drop the store client.  The next operation builds a new one."""
        store, self._store, self._store_config = self._store, None, None
        if store is not None:
            await store.aclose()

    async def connect(self) -> tuple[Configuration, DocumentStore]:
        """Initialize configuration, pick the client, log in if needed."""
        config = self.config.ensure_ready()
        store, stale = self._client_for(config)
        if stale is not None:
            logger.debug("Configuration changed, replacing store client")
            await stale.aclose()

        if not store.requires_credentials:
            return config, store

        if config.credentials is None:
            raise AuthRequired(
                "PocketBase authentication required. Please configure pocketbaseEmail and "
                "pocketbasePassword (or POCKETBASE_EMAIL / POCKETBASE_PASSWORD)."
            )
        if not store.is_authenticated:
            logger.debug(f"Authenticating with PocketBase at {config.store_url}")
            if not await store.authenticate(config.credentials.identity, config.credentials.secret):
                raise AuthFailed("PocketBase authentication failed: credentials were rejected.")
        return config, store

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------
    async def ensure_collection(self) -> CollectionStatus:
        """Create the documents collection unless it already exists."""
        config, store = await self.connect()
        name = config.collection_name
        try:
            return CollectionStatus(await store.get_collection(name), created=False)
        except NotFound:
            logger.info(f"Collection {name!r} not found, creating it")

        try:
            with anyio.CancelScope(shield=True):
                created = await store.create_collection(collection_definition(name))
        except (AuthFailed, AuthRequired):
            raise
        except ExtractorError as exc:
            # Another caller may have created it between our check and create.
            try:
                return CollectionStatus(await store.get_collection(name), created=False)
            except NotFound:
                pass
            raise StoreError(
                f"Failed to create collection {name!r}: {exc.message}",
                cause=exc,
                status_code=exc.status_code,
            ) from exc
        return CollectionStatus(created, created=True)

    async def collection_info(self) -> CollectionInfo:
        config, store = await self.connect()
        collection = await store.get_collection(config.collection_name)
        stats = await store.list_records(config.collection_name, page=1, per_page=1, fields=("id",))
        return CollectionInfo(
            collection=collection,
            total_records=stats.get("totalItems", 0),
            total_pages=stats.get("totalPages", 0),
            records_per_page=stats.get("perPage", 1),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    async def list_documents(self, page: int = 1, page_size: int = 20) -> RecordPage:
        """Newest first, without content."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        config, store = await self.connect()
        raw = await store.list_records(
            config.collection_name, page=page, per_page=page_size, sort="-created", fields=LIST_FIELDS
        )
        return _to_page(raw)

    async def search(self, query: str, limit: int = 50) -> RecordPage:
        """Case-insensitive substring match on title or content."""
        if not query or not query.strip():
            raise ValidationError("Search query must not be empty")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")
        config, store = await self.connect()
        raw = await store.search_records(config.collection_name, query.strip(), SEARCH_FIELDS, limit)
        return _to_page(raw)

    async def get(self, document_id: str) -> Document:
        config, store = await self.connect()
        try:
            record = await store.get_record(config.collection_name, document_id)
        except NotFound as exc:
            raise NotFound(f"Document {document_id!r} not found", cause=exc, status_code=404) from exc
        return Document.from_record(record)

    async def find_by_url(self, url: str) -> Optional[Document]:
        config, store = await self.connect()
        record = await store.find_first(config.collection_name, URL_FIELD, url)
        return Document.from_record(record) if record else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------
    # Writes are shielded: a caller giving up mid-request must not leave the
    # store with a half-applied write we never observed.
    async def create(self, result: ExtractionResult) -> Document:
        config, store = await self.connect()
        data = {
            "title": result.title,
            "content": result.content,
            "metadata": result.metadata,
            "created": utc_timestamp(),
        }
        with anyio.CancelScope(shield=True):
            record = await store.create_record(config.collection_name, data)
        return Document.from_record(record)

    async def update(self, document_id: str, result: ExtractionResult) -> Document:
        config, store = await self.connect()
        data = {
            "title": result.title,
            "content": result.content,
            "metadata": result.metadata,
            "updated": utc_timestamp(),
        }
        with anyio.CancelScope(shield=True):
            record = await store.update_record(config.collection_name, document_id, data)
        return Document.from_record(record)

    async def delete(self, document_id: str) -> None:
        config, store = await self.connect()
        try:
            with anyio.CancelScope(shield=True):
                await store.delete_record(config.collection_name, document_id)
        except NotFound as exc:
            raise NotFound(f"Document {document_id!r} not found", cause=exc, status_code=404) from exc
        logger.info(f"Deleted document {document_id}")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------
    async def connection_status(self) -> dict[str, Any]:
        """Report reachability and login state.  Never raises ExtractorError."""
        config = self.config.preview()
        status: dict[str, Any] = {
            "initialized": self.config.initialized,
            "store_url": config.store_url,
            "collection": config.collection_name,
            "backend": config.store_backend,
            "has_credentials": config.has_credentials,
            "authenticated": False,
            "collection_exists": False,
            "read_only": config.read_only,
            "error": None,
        }
        try:
            config, store = await self.connect()
            status["initialized"] = True
            status["authenticated"] = True
            await store.get_collection(config.collection_name)
            status["collection_exists"] = True
        except NotFound:
            pass
        except ExtractorError as exc:
            status["initialized"] = self.config.initialized
            status["error"] = exc.to_dict()
        return status

    def server_stats(self, sessions: Optional[dict[str, int]] = None) -> dict[str, Any]:
        """Process statistics for the stats resource.  Does not touch the store."""
        config = self.config.preview()
        return {
            "server": "document-extractor-mcp",
            "uptimeSeconds": round(time.time() - self.started_at, 3),
            "configInitialized": self.config.initialized,
            "configGeneration": self.config.generation,
            "storeUrl": config.store_url,
            "collection": config.collection_name,
            "backend": config.store_backend,
            "readOnly": config.read_only,
            "credentialsConfigured": config.has_credentials,
            "sessions": sessions or {},
            "timestamp": utc_timestamp(),
        }
