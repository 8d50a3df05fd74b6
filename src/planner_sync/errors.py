"""Error kinds raised by the planner sync engine.

Every error carries a user-facing message that is safe to surface in a
notice or an API response: provider text is normalized, credential-redacted
and truncated before it is attached.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

_MAX_MESSAGE_LENGTH = 200


class PlannerSyncError(Exception):
    """Base class for all planner sync errors."""

    error_code = "planner_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MissingClientConfiguration(PlannerSyncError):
    """Raised when a provider's OAuth client id is not configured."""

    error_code = "missing_client_configuration"


class ExpiredOrTamperedState(PlannerSyncError):
    """Raised when an OAuth callback has no pending request or a mismatched state."""

    error_code = "invalid_state"


class ProviderDenied(PlannerSyncError):
    """Raised when the provider redirects back with an ``error`` parameter."""

    error_code = "provider_denied"

    def __init__(self, description: str | None = None) -> None:
        self.description = description
        if description:
            super().__init__(f"Connection cancelled: {sanitize_message(description)}")
        else:
            super().__init__("Connection cancelled.")


class TokenExchangeFailed(PlannerSyncError):
    """Raised when the authorization code cannot be exchanged for tokens."""

    error_code = "token_exchange_failed"


class TokenRefreshFailed(PlannerSyncError):
    """Raised when a refresh-token grant is rejected or cannot be performed."""

    error_code = "token_refresh_failed"


class ProviderNotConnected(PlannerSyncError):
    """Raised when a token is requested for a provider without a stored session."""

    error_code = "not_connected"


class ProviderFetchError(PlannerSyncError):
    """Raised when a provider calendar listing fails."""

    error_code = "provider_fetch_failed"


class FeedParseError(PlannerSyncError):
    """Raised when an ICS feed cannot be read or contains no events."""

    error_code = "feed_parse_failed"


class NoAvailableSlot(PlannerSyncError):
    """Raised when the requested duration does not fit anywhere later that day."""

    error_code = "no_available_slot"


class EventValidationError(PlannerSyncError):
    """Raised when an owned-event draft is incomplete or inconsistent."""

    error_code = "invalid_event"


class ReadOnlyEventError(PlannerSyncError):
    """Raised when a caller tries to edit or delete a synced (read-only) event."""

    error_code = "read_only_event"


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def redact_credential_values(message: str) -> str:
    """Redact token-like values from *message*."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code_verifier|code|token)"
        r"\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|code_verifier|token)['"]?"""
        r"""\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def sanitize_message(message: str) -> str:
    return " ".join(redact_credential_values(message).split())[:_MAX_MESSAGE_LENGTH]


def extract_error_message(response: httpx.Response, fallback: str) -> str:
    """Pull a human-readable message out of a provider error response.

    Understands the OAuth token-endpoint envelope (``error_description`` /
    ``error``), the Google and Microsoft Graph API envelope
    (``{"error": {"message": ...}}``) and a bare ``message`` field.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return sanitize_message(description)
        error_field = payload.get("error")
        if isinstance(error_field, str) and error_field.strip():
            return sanitize_message(error_field)
        if isinstance(error_field, dict):
            nested = error_field.get("message")
            if isinstance(nested, str) and nested.strip():
                return sanitize_message(nested)
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return sanitize_message(message)

    return fallback
