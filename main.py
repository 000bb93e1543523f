# =============================================================================
# main.py  -  Entry Point for the Document Extractor MCP Server
# =============================================================================
#
# HOW TO RUN:
#   uv run python main.py                      # stdio (default)
#   TRANSPORT_MODE=http uv run python main.py  # HTTP on $PORT (3000)
#   document-extractor-mcp                     # same, installed script
#
# WHAT HAPPENS:
#   1. Loads .env (POCKETBASE_URL, POCKETBASE_EMAIL, ...)
#   2. Wires the process-wide services: ConfigManager -> DocumentRepository
#      -> IngestionService, and a SessionRegistry that builds a fresh FastMCP
#      server per session (tools/mcp_server.py)
#   3. If credentials are configured and AUTO_CREATE_COLLECTION is on, makes
#      sure the documents collection exists.  Failure here is only a warning:
#      the server still starts and the tools report the problem.
#   4. Serves either the stdio pipe session or the HTTP app (uvicorn).
#
# LAZINESS:
#   Apart from step 3 nothing talks to PocketBase until a tool needs it.
# =============================================================================

import asyncio
import logging

import uvicorn
from dotenv import load_dotenv

# Load environment variables from .env before anything reads them.
load_dotenv()

from core.config import ConfigManager
from core.errors import ExtractorError
from tools.http_app import create_app
from tools.mcp_server import SERVER_NAME, SERVER_VERSION, ToolServices, build_services, create_server
from tools.sessions import SessionRegistry

logger = logging.getLogger("main")

HTTP_HOST = "0.0.0.0"


def build_runtime(config: ConfigManager = None) -> tuple[ToolServices, SessionRegistry]:
    """Wire services and the session registry together."""
    services = build_services(config or ConfigManager())
    registry = SessionRegistry(lambda: create_server(services))
    services.session_counts = registry.counts
    return services, registry


async def prepare_collection(services: ToolServices) -> None:
    """Startup collection check.  Never fatal."""
    try:
        status = await services.repository.ensure_collection()
    except ExtractorError as exc:
        logger.warning(f"⚠️  Collection check failed ({exc.kind.value}): {exc}")
        logger.warning("   The server will start anyway; fix the configuration and retry.")
    else:
        verb = "created" if status.created else "found"
        logger.info(f"✅ Collection {status.collection.get('name')!r} {verb}")
    finally:
        # The check runs on its own event loop; don't carry its client over.
        await services.repository.aclose()


def main() -> None:
    services, registry = build_runtime()
    settings = services.config.preview()

    logger.info(f"🚀 {SERVER_NAME} v{SERVER_VERSION} ({settings.transport_mode} transport)")
    logger.info(f"   Store: {settings.store_url} ({settings.store_backend}), collection {settings.collection_name!r}")
    if not settings.has_credentials and settings.store_backend == "pocketbase":
        logger.info("   No PocketBase credentials yet: store tools will ask for them")

    if settings.has_credentials and settings.auto_create_collection:
        asyncio.run(prepare_collection(services))

    if settings.transport_mode == "http":
        app = create_app(registry, services.config)
        logger.info(f"🌐 Listening on http://{HTTP_HOST}:{settings.listen_port} (/mcp, /sse, /health, /info)")
        uvicorn.run(
            app,
            host=HTTP_HOST,
            port=settings.listen_port,
            log_level="debug" if settings.debug else "info",
        )
    else:
        if settings.transport_mode != "stdio":
            logger.warning(f"Unknown TRANSPORT_MODE {settings.transport_mode!r}, using stdio")
        registry.open_pipe_session().handler.run()


if __name__ == "__main__":
    main()
