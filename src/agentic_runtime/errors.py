"""Exception hierarchy for the runtime.

Tool failures never appear here: they are converted into error
``ToolExecutionResult`` values at the executor boundary. Everything below is
fatal for the operation that raised it.
"""

from __future__ import annotations


class AgenticRuntimeError(Exception):
    """Base class for all runtime errors."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AgenticRuntimeError):
    """A provider call failed and the turn cannot continue."""

    def __init__(self, message: str, *, provider: str = "", status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class ProviderTransportError(ProviderError):
    """Unreachable provider, 5xx, 429 or timeout. Retried by the adapter."""


class ProviderRequestError(ProviderError):
    """The provider rejected the request (4xx). Never retried."""


def classify_status(status_code: int | None) -> type[ProviderError]:
    """Map an HTTP status code to the matching provider error class."""
    if status_code is None:
        return ProviderTransportError
    if status_code == 429 or status_code == 408 or status_code >= 500:
        return ProviderTransportError
    if 400 <= status_code < 500:
        return ProviderRequestError
    return ProviderTransportError


# ---------------------------------------------------------------------------
# History errors
# ---------------------------------------------------------------------------


class HistoryError(AgenticRuntimeError):
    """Base class for history store failures."""


class IntegrityError(HistoryError):
    """A message would break the structure of the session history."""


class SessionNotFoundError(HistoryError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


# ---------------------------------------------------------------------------
# Turn errors
# ---------------------------------------------------------------------------


class TurnTimeoutError(AgenticRuntimeError):
    """The turn-level deadline expired while waiting on the provider or a tool."""


class TurnCancelledError(AgenticRuntimeError):
    """The caller cancelled the turn (cancel event set or stream closed)."""


# ---------------------------------------------------------------------------
# Tool registry errors
# ---------------------------------------------------------------------------


class DuplicateToolError(AgenticRuntimeError):
    """Raised when a tool name is registered twice without ``replace=True``."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")
