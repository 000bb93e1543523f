# =============================================================================
# tools/mcp_server.py  -  FastMCP Tool Server (ALL tools in one place)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Defines every MCP tool the server exposes.  Each tool is a thin wrapper
#   around core/: log the call, run the core operation, format the result as
#   markdown, log the response.
#
# ONE SERVER PER SESSION:
#   create_server() builds a FRESH FastMCP instance every time it is called.
#   The session registry (tools/sessions.py) calls it once per session, so
#   sessions never share protocol state.  They DO share the services bundle
#   (configuration, repository, ingestion), which is process-wide.
#
# TOOL NAMING CONVENTIONS:
#   - get_* / list_* / search_* / collection_info / connection_status
#       read-only, safe to retry
#   - extract_document / delete_document / ensure_collection
#       writes.  NOT registered at all when READ_ONLY_MODE=true.
#
# ERRORS:
#   core/ raises ExtractorError subclasses.  Each tool converts them into a
#   FastMCP ToolError, which the client receives as an isError result whose
#   text names the error kind.  The session stays usable after a failure.
#   Argument validation (URL shape, limit ranges) happens in FastMCP via the
#   pydantic Field constraints before any tool body runs.
#
# LAZY CONFIGURATION:
#   Listing tools never reads configuration beyond the read-only flag.  Only
#   tool bodies that touch the store trigger ConfigManager.ensure_ready().
# =============================================================================

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Annotated, Callable, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import Field

# Notice: we import from core/, never the other way round.
from core.config import ConfigManager
from core.documents import DocumentRepository
from core.errors import ExtractorError
from core.extraction import ExtractionPipeline
from core.ingestion import IngestionService
from tools import formatting

SERVER_NAME = "document-extractor-mcp"
SERVER_VERSION = "1.0.0"
SERVER_INSTRUCTIONS = (
    "Extracts documents from Microsoft Learn and GitHub and stores them in PocketBase. "
    "Use extract_document to ingest a URL, then list_documents, search_documents and "
    "get_document to read them back."
)

# =============================================================================
# Logging Setup
# =============================================================================
# We log to STDERR because in stdio mode the MCP protocol owns STDOUT.  A log
# line on stdout would corrupt the JSON-RPC stream.
#
# ANSI COLOR CODES:
#     - CYAN for incoming requests (tool name + parameters)
#     - GREEN for responses
#     - YELLOW for intermediate status/progress messages
# =============================================================================

_CYAN = "\033[36m"     # Requests (tool calls with params)
_GREEN = "\033[32m"    # Responses
_YELLOW = "\033[33m"   # Status/progress messages
_RESET = "\033[0m"     # Reset to default terminal color

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [MCP] %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)


def _log_request(tool_name: str, **params) -> None:
    """Log an incoming tool call with its parameters in CYAN."""
    param_str = ", ".join(f"{k}={v!r}" for k, v in params.items())
    logger.info(f"{_CYAN}{tool_name} called with: {param_str}{_RESET}")


def _log_status(message: str) -> None:
    """Log an intermediate status message in YELLOW."""
    logger.info(f"{_YELLOW}  → {message}{_RESET}")


def _log_response(tool_name: str, text: str) -> str:
    """Log the first line of the tool response in GREEN, then return it."""
    headline = text.splitlines()[0] if text else ""
    logger.info(f"{_GREEN}  ← {tool_name} response ({len(text)} chars): {headline}{_RESET}")
    return text


def _tool_error(tool_name: str, error: ExtractorError, prefix: str = "Error") -> ToolError:
    """Log a domain failure and turn it into an MCP error result."""
    _log_status(f"{tool_name} failed: {error.kind.value}: {error}")
    return ToolError(formatting.error_text(error, prefix))


# =============================================================================
# Services shared by every session's server
# =============================================================================
@dataclass
class ToolServices:
    """Process-wide collaborators handed to every per-session server."""

    config: ConfigManager
    repository: DocumentRepository
    ingestion: IngestionService
    # Filled in by the session registry once it exists.
    session_counts: Callable[[], dict[str, int]] = field(default=dict)


def build_services(
    config: Optional[ConfigManager] = None,
    pipeline: Optional[ExtractionPipeline] = None,
    store_factory=None,
) -> ToolServices:
    config = config or ConfigManager()
    repository = DocumentRepository(config, store_factory=store_factory)
    ingestion = IngestionService(pipeline or ExtractionPipeline(), repository)
    return ToolServices(config=config, repository=repository, ingestion=ingestion)


# Argument types.  FastMCP validates these before the tool body runs.
HttpUrl = Annotated[
    str,
    Field(
        description="URL of a Microsoft Learn page or a GitHub file to extract",
        pattern=r"^https?://\S+$",
    ),
]
DocumentId = Annotated[str, Field(description="Document ID", pattern=r"^[A-Za-z0-9_]+$")]
PageSize = Annotated[int, Field(description="Number of documents to return (1-100)", ge=1, le=100)]
PageNumber = Annotated[int, Field(description="Page number (starts at 1)", ge=1)]
SearchQuery = Annotated[str, Field(description="Text to look for in titles and content", min_length=1)]


# =============================================================================
# Server factory
# =============================================================================
def create_server(services: ToolServices, read_only: Optional[bool] = None) -> FastMCP:
    """Build a fresh FastMCP server bound to ``services``.

    Args:
        services: Shared configuration, repository and ingestion service.
        read_only: Skip the write tools.  ``None`` means "ask the
            configuration" (READ_ONLY_MODE), without initializing it.
    """
    if read_only is None:
        read_only = services.config.preview().read_only

    mcp = FastMCP(SERVER_NAME, instructions=SERVER_INSTRUCTIONS)
    repository = services.repository

    # -------------------------------------------------------------------------
    # Read tools
    # -------------------------------------------------------------------------
    @mcp.tool()
    async def list_documents(limit: PageSize = 20, page: PageNumber = 1) -> str:
        """List stored documents, newest first, with pagination.

        Content is not included; use get_document for the full text.

        Args:
            limit: Number of documents per page (1-100, default 20).
            page: Page number, starting at 1.
        """
        _log_request("list_documents", limit=limit, page=page)
        try:
            result = await repository.list_documents(page=page, page_size=limit)
        except ExtractorError as exc:
            raise _tool_error("list_documents", exc) from exc
        _log_status(f"Page {result.page}/{result.total_pages}, {result.total_items} total")
        return _log_response("list_documents", formatting.list_text(result))

    @mcp.tool()
    async def search_documents(query: SearchQuery, limit: PageSize = 50) -> str:
        """Search stored documents by title and content (case-insensitive).

        Args:
            query: Text to search for.
            limit: Maximum number of matches (1-100, default 50).
        """
        _log_request("search_documents", query=query, limit=limit)
        try:
            result = await repository.search(query, limit=limit)
        except ExtractorError as exc:
            raise _tool_error("search_documents", exc) from exc
        _log_status(f"{result.total_items} matches")
        return _log_response("search_documents", formatting.search_text(query, result))

    @mcp.tool()
    async def get_document(id: DocumentId) -> str:
        """Get one stored document, including its full content.

        Args:
            id: The document ID returned by extract_document or list_documents.
        """
        _log_request("get_document", id=id)
        try:
            document = await repository.get(id)
        except ExtractorError as exc:
            raise _tool_error("get_document", exc) from exc
        return _log_response("get_document", formatting.document_text(document))

    @mcp.tool()
    async def collection_info() -> str:
        """Show the documents collection: schema, indexes and record statistics."""
        _log_request("collection_info")
        try:
            info = await repository.collection_info()
        except ExtractorError as exc:
            raise _tool_error("collection_info", exc, prefix="Error getting collection info") from exc
        return _log_response("collection_info", formatting.collection_info_text(info))

    @mcp.tool()
    async def connection_status() -> str:
        """Report whether the document store is configured, reachable and logged in.

        Never fails: problems are described in the text.
        """
        _log_request("connection_status")
        status = await repository.connection_status()
        return _log_response("connection_status", formatting.connection_text(status))

    # -------------------------------------------------------------------------
    # Stats resource
    # -------------------------------------------------------------------------
    @mcp.resource(
        "stats://server",
        name="stats",
        description="Current server statistics and metrics",
        mime_type="application/json",
    )
    async def server_stats() -> str:
        stats = repository.server_stats(services.session_counts())
        stats["version"] = SERVER_VERSION
        try:
            info = await repository.collection_info()
            stats["totalDocuments"] = info.total_records
        except ExtractorError as exc:
            stats["totalDocuments"] = None
            stats["error"] = exc.to_dict()
        return json.dumps(stats, indent=2)

    if read_only:
        logger.info("🔒 Running in read-only mode - write operations disabled")
        return mcp

    # -------------------------------------------------------------------------
    # Write tools (absent in read-only mode)
    # -------------------------------------------------------------------------
    @mcp.tool()
    async def extract_document(url: HttpUrl) -> str:
        """Extract a document from Microsoft Learn or GitHub and store it.

        Extracting the same URL again updates the stored document in place
        (same ID) instead of creating a duplicate.

        Args:
            url: A learn.microsoft.com page, or a GitHub file / repository URL
                 (github.com/owner/repo/blob/branch/path,
                 raw.githubusercontent.com/..., or github.com/owner/repo for
                 its README).
        """
        _log_request("extract_document", url=url)
        try:
            outcome = await services.ingestion.ingest(url)
        except ExtractorError as exc:
            raise _tool_error("extract_document", exc) from exc
        _log_status(
            f"{'Updated' if outcome.was_update else 'Created'} {outcome.document.id} "
            f"({outcome.document.metadata.get('wordCount')} words)"
        )
        return _log_response("extract_document", formatting.ingest_text(outcome))

    @mcp.tool()
    async def delete_document(id: DocumentId) -> str:
        """Delete a stored document by ID.

        Args:
            id: The document ID to delete.
        """
        _log_request("delete_document", id=id)
        try:
            await repository.delete(id)
        except ExtractorError as exc:
            raise _tool_error("delete_document", exc) from exc
        return _log_response("delete_document", formatting.deleted_text(id))

    @mcp.tool()
    async def ensure_collection() -> str:
        """Create the documents collection if it does not exist yet."""
        _log_request("ensure_collection")
        try:
            status = await repository.ensure_collection()
        except ExtractorError as exc:
            raise _tool_error("ensure_collection", exc, prefix="Error checking/creating collection") from exc
        return _log_response("ensure_collection", formatting.collection_status_text(status))

    return mcp
