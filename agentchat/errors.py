"""Exception hierarchy for the session agent runtime."""

from __future__ import annotations

from typing import Any

ROUTING_FAILED = "Agent routing failed"
NOT_FOUND = "Not Found"
INTERNAL_ERROR = "Internal Server Error"


class AgentChatError(Exception):
    """Base class; ``status_code`` is the HTTP status the error maps to."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(AgentChatError):
    """Missing or empty required input."""

    status_code = 400


class NotFoundError(AgentChatError):
    """Operation on an unknown session or path."""

    status_code = 404

    def __init__(self, resource: str, identifier: str = "") -> None:
        message = f"{resource} not found"
        super().__init__(message, details={"resource": resource, "identifier": identifier})


class SessionBusyError(AgentChatError):
    """A turn is already in flight for this session."""

    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "A message is already being processed for this session",
            details={"session_id": session_id},
        )


class UpstreamError(AgentChatError):
    """The completion provider rejected the call, was unreachable, or sent garbage."""

    status_code = 500


class ToolExecutionError(AgentChatError):
    """A single tool call failed.  Captured as that call's result."""


class RoutingError(AgentChatError):
    """A request could not be resolved to a session agent."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(ROUTING_FAILED, details={"reason": reason} if reason else None)
