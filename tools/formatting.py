# =============================================================================
# tools/formatting.py  -  Markdown text for tool results
# =============================================================================
# Every tool returns plain markdown text.  Keeping the wording here keeps the
# tool functions in mcp_server.py down to "log, call core, format, return".
# =============================================================================

from datetime import datetime
from typing import Optional

from core.errors import ExtractorError
from core.models import CollectionInfo, CollectionStatus, Document, IngestOutcome, RecordPage

CONTENT_PREVIEW = 200
SEARCH_PREVIEW = 150


def _when(timestamp: Optional[str]) -> str:
    """Render a store timestamp for humans ("2025-01-31 14:02:11 UTC")."""
    if not timestamp:
        return "Unknown"
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00").replace(" ", "T", 1))
    except ValueError:
        return timestamp
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")


def _meta(document: Document, key: str, default: str = "Unknown") -> str:
    value = document.metadata.get(key)
    return str(value) if value not in (None, "") else default


def error_text(error: ExtractorError, prefix: str = "Error") -> str:
    return f"❌ {prefix} [{error.kind.value}]: {error}"


def ingest_text(outcome: IngestOutcome) -> str:
    document = outcome.document
    headline = "🔄 Document updated" if outcome.was_update else "✅ Document extracted and stored"
    return (
        f"{headline} successfully!\n\n"
        f"**Title:** {document.title}\n"
        f"**ID:** {document.id}\n"
        f"**Source:** {_meta(document, 'source')}\n"
        f"**URL:** {_meta(document, 'url', 'N/A')}\n"
        f"**Word Count:** {_meta(document, 'wordCount')}\n"
        f"**Content Preview:** {document.content[:CONTENT_PREVIEW]}..."
    )


def _summary(document: Document, preview: Optional[int] = None) -> str:
    lines = [
        f"**{document.title}** (ID: {document.id})",
        f"Source: {_meta(document, 'source')}",
        f"Domain: {_meta(document, 'domain')}",
        f"Created: {_when(document.created)}",
    ]
    if document.updated:
        lines.append(f"Updated: {_when(document.updated)}")
    if document.url:
        lines.append(f"URL: {document.url}")
    if preview is not None:
        lines.append(f"Preview: {document.content[:preview]}...")
    return "\n".join(lines) + "\n"


def list_text(result: RecordPage) -> str:
    if not result.items:
        return "📚 No documents found in the database."
    body = "\n---\n".join(_summary(document) for document in result.items)
    return (
        f"📚 Found {len(result.items)} documents (Page {result.page} of {max(result.total_pages, 1)}):\n"
        f"Total: {result.total_items} documents\n\n{body}"
    )


def search_text(query: str, result: RecordPage) -> str:
    if not result.items:
        return f'🔍 No documents found matching "{query}"'
    body = "\n---\n".join(_summary(document, preview=SEARCH_PREVIEW) for document in result.items)
    return f'🔍 Found {len(result.items)} documents matching "{query}":\n\n{body}'


def document_text(document: Document) -> str:
    text = (
        f"📄 **{document.title}**\n\n"
        f"**ID:** {document.id}\n"
        f"**Source:** {_meta(document, 'source')}\n"
        f"**Domain:** {_meta(document, 'domain')}\n"
        f"**Word Count:** {_meta(document, 'wordCount')}\n"
        f"**Created:** {_when(document.created)}\n"
    )
    if document.updated:
        text += f"**Updated:** {_when(document.updated)}\n"
    text += f"**URL:** {_meta(document, 'url', 'N/A')}\n"
    if document.metadata.get("description"):
        text += f"**Description:** {document.metadata['description']}\n"
    return text + f"\n**Content:**\n{document.content}"


def deleted_text(document_id: str) -> str:
    return f'🗑️ Document with ID "{document_id}" has been deleted successfully.'


def _schema_fields(collection: dict) -> list[dict]:
    # PocketBase < 0.23 says "schema", newer versions say "fields".
    return collection.get("fields") or collection.get("schema") or []


def collection_status_text(status: CollectionStatus) -> str:
    collection = status.collection
    name = collection.get("name", "?")
    if status.created:
        headline = f'✅ Documents collection "{name}" created successfully!'
    else:
        headline = f'✅ Documents collection "{name}" already exists.'
    return (
        f"{headline}\n\n"
        f"**Collection Details:**\n"
        f"- ID: {collection.get('id', 'Unknown')}\n"
        f"- Name: {name}\n"
        f"- Type: {collection.get('type', 'Unknown')}\n"
        f"- Schema Fields: {len(_schema_fields(collection))}\n"
        f"- Created: {_when(collection.get('created'))}"
    )


def collection_info_text(info: CollectionInfo) -> str:
    collection = info.collection
    fields = _schema_fields(collection)
    schema = "\n".join(
        f"- **{field.get('name')}** ({field.get('type')}){' *required*' if field.get('required') else ''}"
        for field in fields
    ) or "No schema information available"
    indexes = "\n".join(f"- {index}" for index in collection.get("indexes") or []) or "No custom indexes defined"
    return (
        f"📊 **Collection Information: {collection.get('name', '?')}**\n\n"
        f"**Basic Details:**\n"
        f"- ID: {collection.get('id', 'Unknown')}\n"
        f"- Name: {collection.get('name', 'Unknown')}\n"
        f"- Type: {collection.get('type', 'Unknown')}\n"
        f"- Created: {_when(collection.get('created'))}\n"
        f"- Updated: {_when(collection.get('updated'))}\n\n"
        f"**Statistics:**\n"
        f"- Total Records: {info.total_records}\n"
        f"- Total Pages: {info.total_pages}\n"
        f"- Records Per Page: {info.records_per_page}\n\n"
        f"**Schema Fields:**\n{schema}\n\n"
        f"**Indexes:**\n{indexes}"
    )


def connection_text(status: dict) -> str:
    def mark(flag: bool) -> str:
        return "✅" if flag else "❌"

    lines = [
        "🔌 **Document Store Connection**\n",
        f"- Store URL: {status['store_url']}",
        f"- Backend: {status['backend']}",
        f"- Collection: {status['collection']}",
        f"- Configuration initialized: {mark(status['initialized'])}",
        f"- Credentials configured: {mark(status['has_credentials'])}",
        f"- Authenticated: {mark(status['authenticated'])}",
        f"- Collection exists: {mark(status['collection_exists'])}",
        f"- Read-only mode: {'on' if status['read_only'] else 'off'}",
    ]
    error = status.get("error")
    if error:
        lines.append(f"\n**Last error** [{error['kind']}]: {error['message']}")
    return "\n".join(lines)
