"""Error taxonomy for the Evernote bridge.

Every failure the tools can report is raised as one of these variants at the
point where it happens. The MCP layer turns them into structured payloads via
``error_payload`` so user-facing wording lives in one place.
"""

from typing import Any, Dict, Optional


class EvernoteError(Exception):
    """Base class for all bridge errors."""

    category = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(EvernoteError):
    """Consumer key/secret missing or still set to placeholders."""

    category = "configuration_error"


class AuthenticationRequiredError(EvernoteError):
    """No usable credential, or the provider rejected the one we sent."""

    category = "authentication_required"


class ProtocolError(EvernoteError):
    """Non-success response from the provider."""

    category = "protocol_error"

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class MalformedResponseError(ProtocolError):
    """Success response that is missing required fields or cannot be parsed."""

    category = "malformed_response"


class QuotaExceededError(ProtocolError):
    category = "quota_exceeded"


class NetworkError(EvernoteError):
    """Transport-level failure reaching the provider."""

    category = "network_error"


class NotFoundError(EvernoteError):
    category = "not_found"


class ValidationError(EvernoteError):
    """Caller-supplied tool arguments are invalid."""

    category = "malformed_request"


_USER_MESSAGES = {
    "authentication_required": (
        "Evernote authentication required. Run the authenticate tool and "
        "complete the browser flow."
    ),
    "quota_exceeded": "Evernote API quota exceeded. Please try again later.",
    "network_error": (
        "Network error connecting to Evernote. Please check your internet connection."
    ),
}


def error_payload(exc: Exception) -> Dict[str, Any]:
    """Map an exception to the ``message``/``category`` pair shown to the client."""
    if not isinstance(exc, EvernoteError):
        return {"error": f"Unexpected error: {exc}", "category": "internal_error"}

    prefix = _USER_MESSAGES.get(exc.category)
    message = f"{prefix} ({exc.message})" if prefix else exc.message
    payload: Dict[str, Any] = {"error": message, "category": exc.category}
    if isinstance(exc, ProtocolError) and exc.status is not None:
        payload["status"] = exc.status
    return payload
