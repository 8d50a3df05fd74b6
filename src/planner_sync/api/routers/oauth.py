"""Calendar OAuth endpoints.

The flow:
  1. GET /api/oauth/{provider}/start
     - Stores a fresh pending request (state + PKCE verifier).
     - Redirects the browser to the provider, or returns the URL as JSON
       when ``?redirect=false``.

  2. GET /api/oauth/callback
     - Shared by both providers; the pending request says which one.
     - Redirects to ``dashboard_url`` with ``?planner_oauth=connected`` or
       ``?planner_oauth=error&reason=<error_code>`` when a dashboard URL is
       configured, otherwise returns a JSON payload.

  3. DELETE /api/oauth/{provider}
     - Forgets the session and every event synced from that provider.

  4. GET /api/oauth/status
     - Configured/connected flags per provider.  Never returns token values.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from planner_sync.api.deps import get_service
from planner_sync.api.models.oauth import (
    DisconnectResponse,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
    OAuthStatusResponse,
    ProviderConnectionStatus,
)
from planner_sync.errors import ExpiredOrTamperedState, PlannerSyncError
from planner_sync.models import OAuthProvider
from planner_sync.service import PlannerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


def _dashboard_redirect(dashboard_url: str, params: dict[str, str]) -> RedirectResponse:
    separator = "&" if "?" in dashboard_url else "?"
    return RedirectResponse(url=f"{dashboard_url}{separator}{urlencode(params)}", status_code=302)


@router.get("/status", response_model=OAuthStatusResponse)
async def oauth_status(service: PlannerService = Depends(get_service)) -> OAuthStatusResponse:
    settings = service.settings.current
    providers = []
    for provider in OAuthProvider:
        session = service.vault.get_session(provider)
        providers.append(
            ProviderConnectionStatus(
                provider=provider,
                configured=service.config.provider(provider).configured,
                connected=settings.is_connected(provider),
                expires_at=session.expires_at if session is not None else None,
            )
        )
    return OAuthStatusResponse(providers=providers, last_synced_at=settings.last_synced_at)


@router.get(
    "/callback",
    responses={
        200: {"model": OAuthCallbackSuccess, "description": "JSON payload (no dashboard URL)"},
        302: {"description": "Redirect back to the dashboard"},
        400: {"model": OAuthCallbackError},
    },
)
async def oauth_callback(
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="CSRF state nonce."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    error_description: str | None = Query(
        default=None, description="Human-readable error from the provider."
    ),
    service: PlannerService = Depends(get_service),
) -> Response:
    params = {
        key: value
        for key, value in (
            ("code", code),
            ("state", state),
            ("error", error),
            ("error_description", error_description),
        )
        if value is not None
    }
    pending = service.oauth.pending
    dashboard_url = service.config.dashboard_url

    try:
        await service.oauth.complete_flow(params)
        if pending is None:
            raise ExpiredOrTamperedState(
                "No connection request is pending. Please start the connection again."
            )
    except PlannerSyncError as exc:
        payload = OAuthCallbackError(error_code=exc.error_code, message=exc.message)
        if dashboard_url:
            return _dashboard_redirect(
                dashboard_url, {"planner_oauth": "error", "reason": payload.error_code}
            )
        return JSONResponse(status_code=400, content=payload.model_dump())

    if dashboard_url:
        return _dashboard_redirect(
            dashboard_url, {"planner_oauth": "connected", "provider": pending.provider.value}
        )
    return JSONResponse(
        content=OAuthCallbackSuccess(
            provider=pending.provider,
            message=f"{pending.provider.label} connected.",
        ).model_dump(mode="json")
    )


@router.get(
    "/{provider}/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to the provider authorization URL"},
    },
)
async def oauth_start(
    provider: OAuthProvider,
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the provider. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    service: PlannerService = Depends(get_service),
) -> Response:
    authorization_url = await service.oauth.start_flow(provider)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return JSONResponse(
        content=OAuthStartResponse(
            provider=provider, authorization_url=authorization_url
        ).model_dump(mode="json")
    )


@router.delete("/{provider}", response_model=DisconnectResponse)
async def oauth_disconnect(
    provider: OAuthProvider,
    service: PlannerService = Depends(get_service),
) -> DisconnectResponse:
    removed = await service.disconnect(provider)
    return DisconnectResponse(provider=provider, removed_events=removed)
