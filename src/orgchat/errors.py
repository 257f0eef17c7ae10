"""Error taxonomy for the conversational agent.

Every error raised inside a turn is caught at the turn boundary
(``ChatAgent.process_message``) and turned into a conversational reply plus a
recorded Turn. The classes here exist so that the boundary, the dispatcher and
the tests can tell the failure kinds apart.
"""

from typing import Any


class OrgChatError(Exception):
    """Base class for all agent errors."""

    code: str = "orgchat_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def summary(self) -> dict[str, Any]:
        """Return a JSON-safe summary for recording into a Turn."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ResolutionDegraded(OrgChatError):
    """Intent classification fell back to a low-confidence heuristic."""

    code = "resolution_degraded"


class SchemaMismatch(OrgChatError):
    """The target object has no discovered fields, or fields were dropped."""

    code = "schema_mismatch"


class CapabilityError(OrgChatError):
    """A call to the schema/capability service failed."""

    code = "capability_error"

    def __init__(
        self,
        message: str,
        *,
        function: str | None = None,
        status: int | None = None,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if function:
            details["function"] = function
        if status is not None:
            details["status"] = status
        if suggestions:
            details["suggestions"] = list(suggestions)
        super().__init__(message, details)
        self.function = function
        self.status = status
        self.suggestions = suggestions or []


class CapabilityTimeout(CapabilityError):
    """The capability call exceeded its bounded wait."""

    code = "capability_timeout"


class CapabilityUnavailable(CapabilityError):
    """Transport failure or an error response from the capability service."""

    code = "capability_unavailable"


class SessionNotFound(OrgChatError):
    """No conversation session exists for the requested user."""

    code = "session_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"No conversation session for user '{user_id}'", {"user_id": user_id})
        self.user_id = user_id
