"""Pydantic models for the calendar OAuth endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from planner_sync.models import OAuthProvider


class OAuthStartResponse(BaseModel):
    """Authorization URL returned to programmatic callers (``?redirect=false``)."""

    provider: OAuthProvider
    authorization_url: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Calendar connected."
    provider: OAuthProvider


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    ``message`` is already sanitized: provider text is whitespace normalized,
    credential-redacted and truncated.
    """

    success: bool = False
    error_code: str
    message: str


class ProviderConnectionStatus(BaseModel):
    provider: OAuthProvider
    configured: bool
    connected: bool
    expires_at: datetime | None = None


class OAuthStatusResponse(BaseModel):
    providers: list[ProviderConnectionStatus]
    last_synced_at: datetime | None = None


class DisconnectResponse(BaseModel):
    success: bool = True
    provider: OAuthProvider
    removed_events: int
