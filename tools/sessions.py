# =============================================================================
# tools/sessions.py  -  Transport Session Registry
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Keeps track of every live protocol session, whatever transport it came in
#   on, and guarantees each one gets its OWN tool server:
#
#       pipe            stdio; one per process, opened at startup
#       streaming-http  POST/GET/DELETE /mcp, id in the mcp-session-id header
#       event-stream    GET /sse + POST /messages/{id}
#
# THE RULES:
#   - create() and remove() are the only mutators, and neither suspends, so a
#     session id can never be half-registered.
#   - A known id is reused.  No id (or an unknown one) is only acceptable on
#     an "initialize" request, which mints a fresh id.  Anything else is an
#     UnknownSession, rejected before any tool code runs.
#   - remove() returns True exactly once per session.  Transports call it
#     from every exit path; only the first call counts.
# =============================================================================

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from core.errors import TransportError

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    PIPE = "pipe"
    STREAMING_HTTP = "streaming-http"
    EVENT_STREAM = "event-stream"


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


class UnknownSession(TransportError):
    """A request referenced no session (or a dead one) and cannot start one."""


@dataclass(eq=False)
class Session:
    id: str
    kind: TransportKind
    handler: Any                        # the session's own FastMCP server
    transport: Any = None               # set by the transport binding
    state: SessionState = SessionState.CREATED
    created_at: float = field(default_factory=time.time)
    request_count: int = 0

    def activate(self) -> None:
        if self.state is SessionState.CREATED:
            self.state = SessionState.ACTIVE


class SessionRegistry:
    """session-id -> Session, plus the singleton pipe session.

    Args:
        handler_factory: Builds a fresh tool server.  Called once per session.
    """

    def __init__(self, handler_factory: Callable[[], Any]):
        self._handler_factory = handler_factory
        self._sessions: dict[str, Session] = {}
        self._pipe: Optional[Session] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.state is SessionState.CLOSED:
            return None
        return session

    def create(
        self,
        kind: TransportKind,
        session_id: Optional[str] = None,
        transport: Any = None,
    ) -> Session:
        """Register a new session with a freshly built tool server."""
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._sessions:
            raise TransportError(f"Session {session_id} already exists")
        try:
            handler = self._handler_factory()
        except Exception as exc:
            raise TransportError(f"Could not build a tool server for session {session_id}: {exc}", cause=exc) from exc
        session = Session(id=session_id, kind=kind, handler=handler, transport=transport)
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} opened ({kind.value}, {len(self._sessions)} live)")
        return session

    def remove(self, session_id: str) -> bool:
        """Forget a session.  True only for the call that actually removed it."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.state = SessionState.CLOSED
        if session is self._pipe:
            self._pipe = None
        logger.info(
            f"Session {session_id} closed ({session.kind.value}, "
            f"{session.request_count} requests, {len(self._sessions)} live)"
        )
        return True

    def resolve(self, kind: TransportKind, session_id: Optional[str], starts_session: bool) -> tuple[Session, bool]:
        """Find the session for a request, or start one.

        Returns:
            ``(session, created)``.

        Raises:
            UnknownSession: no usable session and the request is not an
                initialize request.
        """
        existing = self.get(session_id)
        if existing is not None and existing.kind is kind:
            existing.request_count += 1
            return existing, False
        if starts_session:
            if session_id:
                logger.debug(f"Unknown session id {session_id}, minting a new one for initialize")
            session = self.create(kind)
            session.request_count += 1
            return session, True
        raise UnknownSession("Bad Request: No valid session ID provided", status_code=400)

    def open_pipe_session(self) -> Session:
        """Return the process-wide stdio session, creating it on first call."""
        if self._pipe is None:
            self._pipe = self.create(TransportKind.PIPE)
            self._pipe.activate()
        return self._pipe

    def sessions(self, kind: Optional[TransportKind] = None) -> list[Session]:
        return [s for s in self._sessions.values() if kind is None or s.kind is kind]

    def counts(self) -> dict[str, int]:
        """Live sessions per transport kind (every kind present, possibly 0)."""
        totals = {kind.value: 0 for kind in TransportKind}
        for session in self._sessions.values():
            totals[session.kind.value] += 1
        totals["total"] = len(self._sessions)
        return totals
