# =============================================================================
# tools/http_app.py  -  HTTP transports (Streamable HTTP + SSE) and liveness
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Builds the Starlette application served by uvicorn when
#   TRANSPORT_MODE=http.  Every route funnels into the session registry, so
#   each MCP session gets its own FastMCP server no matter how it connected.
#
# ROUTES:
#   POST|GET|DELETE /mcp         Streamable HTTP (mcp-session-id header)
#   GET  /sse                    event stream, one session per stream
#   POST /messages/{session_id}  client -> server messages for an SSE session
#   GET  /health                 liveness, never touches the store
#   GET  /info                   server description
#
# RUNTIME RECONFIGURATION:
#   Query parameters on /mcp, /sse and /messages are configuration overrides
#   in Smithery's dotted form (?pocketbaseUrl=...&credentials.identity=...).
#   They are applied before routing; the next store operation rebuilds the
#   Configuration.
#
# ERROR CODES (JSON-RPC, at this boundary only):
#   -32000  no valid session for the request           (HTTP 400 / 404)
#   -32603  a session could not be set up (TransportError)  (HTTP 500)
# =============================================================================

import contextlib
import json
import logging
import time
from typing import Optional

import anyio
from anyio.abc import TaskGroup
from mcp.server.sse import SseServerTransport
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.applications import Starlette
from starlette.datastructures import QueryParams
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from core.config import ConfigManager, parse_dotted
from core.errors import TransportError
from core.models import utc_timestamp
from tools.mcp_server import SERVER_NAME, SERVER_VERSION
from tools.sessions import Session, SessionRegistry, TransportKind, UnknownSession

logger = logging.getLogger(__name__)

JSONRPC_SESSION_ERROR = -32000
JSONRPC_INTERNAL_ERROR = -32603

# Query parameters that belong to the transport, not to configuration.
RESERVED_PARAMS = {"session_id", "sessionId"}


def jsonrpc_error(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


def apply_query_overrides(config: ConfigManager, scope: Scope) -> bool:
    """Apply dotted query parameters as configuration overrides."""
    params = QueryParams(scope.get("query_string", b""))
    pairs = [(key, value) for key, value in params.multi_items() if key not in RESERVED_PARAMS]
    if not pairs:
        return False
    return config.apply_overrides(parse_dotted(pairs))


def is_initialize(body: bytes) -> bool:
    """True when a JSON-RPC body (single or batch) contains ``initialize``."""
    try:
        message = json.loads(body)
    except ValueError:
        return False
    messages = message if isinstance(message, list) else [message]
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


def _without_header(scope: Scope, name: str) -> Scope:
    header = name.lower().encode("latin-1")
    return {**scope, "headers": [(k, v) for k, v in scope.get("headers", []) if k.lower() != header]}


def _replay(body: bytes, receive: Receive) -> Receive:
    """Hand an already-read request body to the next ASGI app."""
    replayed = False

    async def receive_again():
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return receive_again


async def _serve(session: Session, read_stream, write_stream) -> None:
    # FastMCP 2.x keeps its low-level mcp.server.Server in _mcp_server; the
    # pin in pyproject.toml holds that attribute in place.
    server = session.handler._mcp_server
    session.activate()
    await server.run(read_stream, write_stream, server.create_initialization_options())


# =============================================================================
# Streamable HTTP
# =============================================================================
class StreamableHttpBinding:
    """ASGI app for /mcp.

    Each session's server loop runs in a task group owned by this binding
    (entered from the application lifespan).  The session is removed when its
    loop ends or the client terminates it with DELETE.
    """

    def __init__(self, registry: SessionRegistry, config: ConfigManager, json_response: bool = False):
        self.registry = registry
        self.config = config
        self.json_response = json_response
        self._task_group: Optional[TaskGroup] = None

    @contextlib.asynccontextmanager
    async def run(self):
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            try:
                yield
            finally:
                task_group.cancel_scope.cancel()
                self._task_group = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        apply_query_overrides(self.config, scope)
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "POST":
            body = await request.body()
            receive = _replay(body, receive)
            starts_session = is_initialize(body)
        else:
            starts_session = False

        try:
            session, created = self.registry.resolve(TransportKind.STREAMING_HTTP, session_id, starts_session)
        except UnknownSession as exc:
            logger.debug(f"Rejected {request.method} /mcp: {exc.message} (id={session_id!r})")
            await jsonrpc_error(JSONRPC_SESSION_ERROR, exc.message, 400)(scope, receive, send)
            return
        except TransportError as exc:
            logger.error(f"Could not create session: {exc}")
            await jsonrpc_error(JSONRPC_INTERNAL_ERROR, "Internal server error", 500)(scope, receive, send)
            return

        if created:
            # An unknown id on initialize is replaced by the freshly minted one.
            scope = _without_header(scope, MCP_SESSION_ID_HEADER)
            try:
                await self._start(session)
            except TransportError as exc:
                logger.error(f"Could not start session {session.id}: {exc}")
                self.registry.remove(session.id)
                await jsonrpc_error(JSONRPC_INTERNAL_ERROR, "Internal server error", 500)(scope, receive, send)
                return

        transport: StreamableHTTPServerTransport = session.transport
        await transport.handle_request(scope, receive, send)
        if transport.is_terminated:
            self.registry.remove(session.id)

    async def _start(self, session: Session) -> None:
        if self._task_group is None:
            raise TransportError("Streamable HTTP binding is not running")
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session.id,
            is_json_response_enabled=self.json_response,
        )
        session.transport = transport

        async def run_session(*, task_status=anyio.TASK_STATUS_IGNORED):
            try:
                async with transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await _serve(session, read_stream, write_stream)
            except Exception:
                # One session's crash must not cancel its siblings in the group.
                logger.exception(f"Session {session.id} crashed")
            finally:
                self.registry.remove(session.id)

        try:
            await self._task_group.start(run_session)
        except RuntimeError as exc:
            raise TransportError(f"Session {session.id} failed to start: {exc}", cause=exc) from exc


# =============================================================================
# SSE (event stream + message endpoint)
# =============================================================================
class EventStreamBinding:
    """ASGI app for GET /sse.  The session lives as long as the stream."""

    def __init__(self, registry: SessionRegistry, config: ConfigManager):
        self.registry = registry
        self.config = config

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        apply_query_overrides(self.config, scope)
        try:
            session = self.registry.create(TransportKind.EVENT_STREAM)
        except TransportError as exc:
            logger.error(f"Could not open event stream: {exc}")
            await jsonrpc_error(JSONRPC_INTERNAL_ERROR, "Internal server error", 500)(scope, receive, send)
            return

        transport = SseServerTransport(f"/messages/{session.id}")
        session.transport = transport
        try:
            async with transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
                await _serve(session, read_stream, write_stream)
        finally:
            self.registry.remove(session.id)


class EventStreamMessages:
    """ASGI app for POST /messages/{session_id}."""

    def __init__(self, registry: SessionRegistry, config: ConfigManager):
        self.registry = registry
        self.config = config

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        apply_query_overrides(self.config, scope)
        session_id = scope.get("path_params", {}).get("session_id")
        try:
            session, _ = self.registry.resolve(TransportKind.EVENT_STREAM, session_id, starts_session=False)
        except UnknownSession:
            await jsonrpc_error(JSONRPC_SESSION_ERROR, f"Session not found: {session_id}", 404)(scope, receive, send)
            return
        if session.transport is None:
            await jsonrpc_error(JSONRPC_SESSION_ERROR, f"Session not ready: {session_id}", 404)(scope, receive, send)
            return
        transport: SseServerTransport = session.transport
        await transport.handle_post_message(scope, receive, send)


# =============================================================================
# Application
# =============================================================================
def create_app(registry: SessionRegistry, config: ConfigManager, json_response: bool = False) -> Starlette:
    """Starlette app serving every HTTP transport plus /health and /info."""
    started_at = time.time()
    streamable = StreamableHttpBinding(registry, config, json_response=json_response)
    event_stream = EventStreamBinding(registry, config)
    messages = EventStreamMessages(registry, config)

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "timestamp": utc_timestamp(),
            "uptime": round(time.time() - started_at, 3),
            "configInitialized": config.initialized,
            "sessions": registry.counts(),
        })

    async def info(request: Request) -> JSONResponse:
        return JSONResponse({
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "description": "Extracts documents from Microsoft Learn and GitHub into PocketBase",
            "endpoints": {
                "mcp": "/mcp",
                "sse": "/sse",
                "messages": "/messages/{session_id}",
                "health": "/health",
                "info": "/info",
            },
            "features": {
                "transports": [kind.value for kind in TransportKind],
                "sources": ["Microsoft Learn", "GitHub"],
                "store": "PocketBase",
                "readOnly": config.preview().read_only,
            },
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        async with streamable.run():
            logger.info("HTTP transports ready: /mcp (streamable HTTP), /sse (event stream)")
            yield
        logger.info("HTTP transports stopped")

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/info", info, methods=["GET"]),
        Route("/mcp", streamable, methods=["GET", "POST", "DELETE"]),
        Route("/sse", event_stream, methods=["GET"]),
        Route("/messages/{session_id}", messages, methods=["POST"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan)
