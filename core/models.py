# =============================================================================
# core/models.py  -  Data Models (the "nouns" of the system)
# =============================================================================
#
# These dataclasses define the *shape* of every piece of information that flows
# through the system.  They carry almost no behavior: a couple of converters
# between store records and models, nothing else.
#
# DESIGN PRINCIPLE - "One shape per concept":
#   The extraction pipeline, the store adapter and the tool layer all speak in
#   these types.  Store records (plain dicts from PocketBase) are converted at
#   the adapter boundary and never leak further than that.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision ("...Z")."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -----------------------------------------------------------------------------
# Credentials / Configuration - process-wide settings
# -----------------------------------------------------------------------------
# Configuration is frozen: it is replaced wholesale on reload and never
# patched in place.  See core/config.py for the lifecycle.
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Credentials:
    """Store login.  ``secret`` is never logged or echoed back to callers."""

    identity: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class Configuration:
    """Everything the process needs to reach the document store."""

    store_url: str                      # "http://127.0.0.1:8090"
    collection_name: str                # "documents"
    credentials: Optional[Credentials] = None
    debug: bool = False
    listen_port: int = 3000
    read_only: bool = False             # write tools are not registered
    auto_create_collection: bool = True
    transport_mode: str = "stdio"       # "stdio" or "http"
    fetch_timeout: float = 30.0         # seconds, outbound content fetches only
    store_backend: str = "pocketbase"   # "pocketbase" or "memory"

    @property
    def has_credentials(self) -> bool:
        return self.credentials is not None


# -----------------------------------------------------------------------------
# ExtractionResult - what the extraction pipeline produces
# -----------------------------------------------------------------------------
# Transient: it is the input to upsert and is never stored on its own.
# metadata always carries source, url, extractedAt, wordCount, contentLength
# and domain; providers add their own fields on top.
# -----------------------------------------------------------------------------
@dataclass
class ExtractionResult:
    """A fetched and normalized remote resource."""

    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return self.metadata["url"]


# -----------------------------------------------------------------------------
# Document - one stored record
# -----------------------------------------------------------------------------
# Identity is metadata["url"], not ``id``.  ``id`` is assigned by the store
# and survives updates.
# -----------------------------------------------------------------------------
@dataclass
class Document:
    """A stored document."""

    id: str
    title: str
    content: str = ""                   # empty when listed without content
    metadata: dict[str, Any] = field(default_factory=dict)
    created: Optional[str] = None
    updated: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self.metadata.get("url")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Document":
        return cls(
            id=record["id"],
            title=record.get("title") or "",
            content=record.get("content") or "",
            metadata=record.get("metadata") or {},
            created=record.get("created") or None,
            updated=record.get("updated") or None,
        )


@dataclass
class IngestOutcome:
    """Result of one ingest call."""

    document: Document
    was_update: bool


# -----------------------------------------------------------------------------
# RecordPage - one page of a list or search
# -----------------------------------------------------------------------------
@dataclass
class RecordPage:
    page: int
    per_page: int
    total_items: int
    total_pages: int
    items: list[Document] = field(default_factory=list)


@dataclass
class CollectionStatus:
    """Outcome of ensure_collection."""

    collection: dict[str, Any]
    created: bool


@dataclass
class CollectionInfo:
    """Collection definition plus record statistics."""

    collection: dict[str, Any]
    total_records: int
    total_pages: int
    records_per_page: int
