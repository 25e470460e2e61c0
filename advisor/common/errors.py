"""
Error taxonomy shared by every advisor component.

Faults are caught at operation boundaries and classified into one of a
small set of kinds so the caller can decide between replying, degrading to
a Task, or retrying.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from pydantic import ValidationError


class ErrorKind(str, Enum):
    """Kinds of failure visible to callers"""
    NOT_CONNECTED = "not_connected"  # integration has no credentials
    INVALID_ARGUMENTS = "invalid_arguments"  # malformed tool call or input
    UPSTREAM_ERROR = "upstream_error"  # LLM or provider failed
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"  # fall back to text search
    TIMEOUT = "timeout"  # caller gave up waiting


class AdvisorError(Exception):
    """Base class for classified advisor failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR


class NotConnectedError(AdvisorError):
    """Raised when a user has not connected the integration an action needs."""

    kind = ErrorKind.NOT_CONNECTED

    def __init__(self, provider: str, message: Optional[str] = None):
        self.provider = provider
        super().__init__(message or f"{provider} is not connected")


class InvalidArgumentsError(AdvisorError):
    kind = ErrorKind.INVALID_ARGUMENTS


class UpstreamError(AdvisorError):
    """Raised when an LLM endpoint or an action provider fails.

    ``status`` carries the provider's status code when there is one, e.g. 409
    when a CRM contact already exists.
    """

    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class EmbeddingUnavailableError(AdvisorError):
    kind = ErrorKind.EMBEDDING_UNAVAILABLE

def classify(exc: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind. Unknown faults count as upstream errors."""
    if isinstance(exc, AdvisorError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ValidationError):
        return ErrorKind.INVALID_ARGUMENTS
    return ErrorKind.UPSTREAM_ERROR
