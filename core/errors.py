# =============================================================================
# core/errors.py  -  Error Taxonomy
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Defines the closed set of failure kinds the system can report, and one
#   exception class per kind.  Every exception carries the same shape:
#
#       kind         ErrorKind member (the tag)
#       message      human-readable text
#       cause        the underlying exception, if any
#       status_code  HTTP status from a remote service, if any
#
# WHERE ERRORS ARE CONVERTED:
#   core/ raises these exceptions and never catches them to hide a failure.
#   The tools/ layer catches ExtractorError at the tool boundary and turns it
#   into an MCP error result, so one failed call never takes the session down.
#   Transport code maps kinds to JSON-RPC codes (see tools/http_app.py).
# =============================================================================

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional


class ErrorKind(str, Enum):
    """Every failure the system can report.  The set is closed."""

    CONFIG_NOT_READY = "config_not_ready"
    AUTH_REQUIRED = "auth_required"
    AUTH_FAILED = "auth_failed"
    FETCH_ERROR = "fetch_error"
    INSUFFICIENT_CONTENT = "insufficient_content"
    UNSUPPORTED_SOURCE = "unsupported_source"
    UNSUPPORTED_TARGET = "unsupported_target"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    TRANSPORT_ERROR = "transport_error"
    STORE_ERROR = "store_error"


@dataclass(eq=False)
class ExtractorError(Exception):
    """Base class for all domain failures.

    Subclasses only pin ``kind``; they share the constructor.
    """

    message: str
    cause: Optional[BaseException] = None
    status_code: Optional[int] = None

    kind: ClassVar[ErrorKind] = ErrorKind.STORE_ERROR

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": str(self),
            "cause": repr(self.cause) if self.cause else None,
        }


class ConfigNotReady(ExtractorError):
    kind = ErrorKind.CONFIG_NOT_READY


class AuthRequired(ExtractorError):
    """No credentials configured.  Recoverable: supply them and retry."""

    kind = ErrorKind.AUTH_REQUIRED


class AuthFailed(ExtractorError):
    kind = ErrorKind.AUTH_FAILED


class FetchError(ExtractorError):
    """Timeout, connection failure or non-success status on a content fetch."""

    kind = ErrorKind.FETCH_ERROR


class InsufficientContent(ExtractorError):
    kind = ErrorKind.INSUFFICIENT_CONTENT


class UnsupportedSource(ExtractorError):
    """No registered extractor recognises the URL."""

    kind = ErrorKind.UNSUPPORTED_SOURCE


class UnsupportedTarget(ExtractorError):
    """The source is known but the URL points at something we can't ingest
    (a directory listing, an owner page, ...)."""

    kind = ErrorKind.UNSUPPORTED_TARGET


class NotFound(ExtractorError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(ExtractorError):
    kind = ErrorKind.VALIDATION_ERROR


class TransportError(ExtractorError):
    """A session could not be established.  Fatal to that request only."""

    kind = ErrorKind.TRANSPORT_ERROR


class StoreError(ExtractorError):
    """Opaque failure reported by the document store."""

    kind = ErrorKind.STORE_ERROR
