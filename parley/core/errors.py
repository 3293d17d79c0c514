"""
Engine error taxonomy and failure classification.

Transport failures arrive as text (``"API error 429: {...}"`` or a
connection message). ``classify_failure`` turns them into typed errors
with user-facing messages so callers can react per category: prompt for a
new key on auth failures, suggest waiting on rate limits, and so on.
"""

import json
import re
from typing import Any


class EngineError(Exception):
    """Base class for engine failures, with a user-facing message."""

    category = "error"

    def __init__(self, message: str, original: Exception | str | None = None, status: int = 0):
        self.original = original
        self.status = status
        super().__init__(message)


class TransportError(EngineError):
    """Connection, DNS or timeout failure."""

    category = "transport"


class AuthenticationError(EngineError):
    """Credentials were rejected (401/403)."""

    category = "auth"


class RateLimitError(EngineError):
    """The vendor asked us to slow down (429)."""

    category = "rate_limit"


class QuotaExceededError(EngineError):
    """Balance or quota exhausted (402)."""

    category = "quota"


class ProviderUnavailableError(EngineError):
    """The vendor failed on its side (5xx)."""

    category = "provider"


class RequestRejectedError(EngineError):
    """The vendor rejected the request as invalid."""

    category = "rejected"


class EnvelopeError(EngineError):
    """The response body was not a stream we could parse at all."""

    category = "envelope"


class SessionBusyError(EngineError):
    """A turn was requested while the session is still streaming."""

    category = "busy"

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' is {status}; wait for it to finish or abort it.")


class NoAccessError(EngineError):
    """No credentials are configured for the requested model."""

    category = "no_access"

    def __init__(self, model: str):
        self.model = model
        super().__init__(
            f"No API key configured for '{model}'. "
            f"Set the provider's key (e.g. parley config set ANTHROPIC_API_KEY) or a relay token."
        )


class OfflineError(EngineError):
    """Credentials exist but could not be refreshed because the network is down."""

    category = "offline"

    def __init__(self, message: str = "You appear to be offline. Check your connection and try again."):
        super().__init__(message)


_AUTH_TEXT = "Invalid API key. Update it with 'parley config set', or sign in to the relay again."
_RATE_LIMIT_TEXT = "Rate limit exceeded. Wait a moment and try again."
_UNAVAILABLE_TEXT = "The AI provider is experiencing issues. Try again in a few minutes."
_QUOTA_TEXT = "Insufficient balance. Add funds to continue."

_STATUS_RE = re.compile(r"API error (\d{3})")
_JSON_RE = re.compile(r"\{[\s\S]*\}")


def _body_message(text: str) -> str:
    """Pull ``error.message`` (or ``message``) out of a JSON error body."""
    match = _JSON_RE.search(text)
    if not match:
        return ""
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return ""
    if not isinstance(parsed, dict):
        return ""
    error = parsed.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(parsed.get("message"), str):
        return parsed["message"]
    if isinstance(error, str):
        return error
    return ""


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def classify_failure(raw: Exception | str) -> EngineError:
    """
    Convert a raw transport failure into a typed EngineError.

    Args:
        raw: The transport's error text or exception

    Returns:
        An EngineError subclass carrying a friendly message
    """
    if isinstance(raw, EngineError):
        return raw

    text = str(raw) if raw else "Unknown error"
    match = _STATUS_RE.search(text)
    status = int(match.group(1)) if match else 0
    body = _body_message(text)

    if status in (401, 403):
        return AuthenticationError(
            _AUTH_TEXT,
            original=raw,
            status=status,
        )
    if status == 402:
        return QuotaExceededError(
            body or _QUOTA_TEXT, original=raw, status=status
        )
    if status == 429:
        return RateLimitError(
            _RATE_LIMIT_TEXT, original=raw, status=status
        )
    if status >= 500:
        return ProviderUnavailableError(
            _UNAVAILABLE_TEXT,
            original=raw,
            status=status,
        )
    if re.search(r"timeout|timed out", text, re.IGNORECASE):
        return TransportError(
            "Request timed out. Check your connection and try again.", original=raw
        )
    if re.search(r"connection|network|refused|dns", text, re.IGNORECASE):
        return TransportError(
            "Could not connect to the AI provider. Check your internet connection.", original=raw
        )
    if body:
        return RequestRejectedError(_truncate(body, 200), original=raw, status=status)
    if status > 0:
        return RequestRejectedError(
            f"Request failed (HTTP {status}). Try again.", original=raw, status=status
        )
    return EngineError(_truncate(text, 150), original=raw)


# Error types (Anthropic) and codes (OpenAI) that can arrive inside a stream
_STREAM_ERRORS: dict[str, tuple[type[EngineError], str | None]] = {
    "rate_limit_error": (RateLimitError, _RATE_LIMIT_TEXT),
    "rate_limit_exceeded": (RateLimitError, _RATE_LIMIT_TEXT),
    "overloaded_error": (ProviderUnavailableError, _UNAVAILABLE_TEXT),
    "api_error": (ProviderUnavailableError, _UNAVAILABLE_TEXT),
    "server_error": (ProviderUnavailableError, _UNAVAILABLE_TEXT),
    "authentication_error": (AuthenticationError, _AUTH_TEXT),
    "permission_error": (AuthenticationError, _AUTH_TEXT),
    "billing_error": (QuotaExceededError, None),
    "insufficient_quota": (QuotaExceededError, None),
    "invalid_request_error": (RequestRejectedError, None),
}


def classify_stream_error(error: dict[str, Any] | None) -> EngineError:
    """
    Convert an error record received mid-stream into a typed EngineError.

    Args:
        error: ``{"type": ..., "message": ...}`` as the adapter extracted it
    """
    error = error or {}
    kind = error.get("type") or ""
    message = error.get("message") if isinstance(error.get("message"), str) else ""
    original = json.dumps(error)

    if kind in _STREAM_ERRORS:
        cls, friendly = _STREAM_ERRORS[kind]
        text = friendly or _truncate(message, 200)
        if not text:
            text = _QUOTA_TEXT if cls is QuotaExceededError else "The provider rejected the request."
        return cls(text, original=original)
    if message:
        return EngineError(_truncate(message, 200), original=original)
    return EngineError("The provider reported an error mid-stream.", original=original)


def format_error_markdown(error: EngineError) -> str:
    """Render an error the way it is appended to an assistant message."""
    return f"**Error:** {error}"
