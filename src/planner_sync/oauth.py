"""OAuth 2.0 authorization-code + PKCE flow for the calendar providers.

The flow has two legs separated by a full browser navigation:

  1. ``start_flow(provider)``
     - Generates a random ``state`` nonce and a PKCE code verifier.
     - Stores a single :class:`OAuthPendingRequest` (overwriting any
       unconsumed previous one) in memory and in the state store.
     - Returns the provider authorization URL for the caller to redirect to.

  2. ``complete_flow(params)``
     - Consumes the pending request exactly once (compare-and-clear).
     - Validates ``state``, provider ``error`` and ``code`` in that order.
     - Exchanges the code plus verifier (no client secret) for tokens and
       stores the resulting session in the :class:`TokenVault`.

Security notes:
  - The pending request is cleared before any network call, regardless of
    the outcome, so a callback can never be replayed.
  - Verifiers and tokens are never logged; state values are truncated.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from collections.abc import Callable, Mapping
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from planner_sync.config import PlannerConfig, ProviderConfig
from planner_sync.core.state import StateStore
from planner_sync.errors import (
    ExpiredOrTamperedState,
    MissingClientConfiguration,
    PlannerSyncError,
    ProviderDenied,
    TokenExchangeFailed,
)
from planner_sync.models import (
    NoticeLevel,
    Notifier,
    OAuthPendingRequest,
    OAuthProvider,
    TokenSession,
    discard_notice,
)
from planner_sync.store import SettingsStore
from planner_sync.tokens import Clock, TokenVault, request_token, utc_now

logger = logging.getLogger(__name__)

PENDING_KEY = "planner::oauth::pending"


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------


def generate_state() -> str:
    """Generate a cryptographically random CSRF state nonce."""
    return secrets.token_urlsafe(24)


def generate_code_verifier() -> str:
    """Generate a PKCE verifier (64 URL-safe characters, within RFC 7636's 43-128)."""
    return secrets.token_urlsafe(48)


def code_challenge(verifier: str) -> str:
    """S256 challenge: unpadded base64url of the verifier's SHA-256 digest."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorization_url(
    provider_config: ProviderConfig,
    *,
    redirect_uri: str,
    state: str,
    challenge: str,
) -> str:
    params = {
        "client_id": provider_config.client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": provider_config.scope,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    if provider_config.provider is OAuthProvider.google:
        params.update(
            {
                "access_type": "offline",
                "prompt": "consent",  # Force a refresh token on every grant
                "include_granted_scopes": "true",
            }
        )
    else:
        params["response_mode"] = "query"
    return f"{provider_config.authorize_url}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Flow controller
# ---------------------------------------------------------------------------


class OAuthFlowController:
    """Owns the single pending-request slot and drives both flow legs."""

    def __init__(
        self,
        *,
        config: PlannerConfig,
        state: StateStore,
        http_client: httpx.AsyncClient,
        vault: TokenVault,
        settings: SettingsStore,
        notify: Notifier = discard_notice,
        on_connected: Callable[[OAuthProvider], None] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._state = state
        self._http_client = http_client
        self._vault = vault
        self._settings = settings
        self._notify = notify
        self._on_connected = on_connected
        self._clock = clock
        self._pending: OAuthPendingRequest | None = None

    @property
    def pending(self) -> OAuthPendingRequest | None:
        return self._pending

    async def load(self) -> None:
        """Restore a pending request persisted before a restart or redirect."""
        raw = await self._state.get(PENDING_KEY)
        if raw is None:
            return
        try:
            self._pending = OAuthPendingRequest.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable pending OAuth request")
            self._pending = None

    async def start_flow(self, provider: OAuthProvider) -> str:
        provider_config = self._config.provider(provider)
        if not provider_config.configured:
            raise MissingClientConfiguration(
                f"{provider.label} is not configured: the OAuth client id is missing."
            )

        previous = self._pending
        if previous is not None:
            logger.warning(
                "Overwriting unconsumed OAuth request (provider=%s, state=%s...)",
                previous.provider.value,
                previous.state[:8],
            )

        verifier = generate_code_verifier()
        pending = OAuthPendingRequest(
            provider=provider,
            state=generate_state(),
            code_verifier=verifier,
            redirect_uri=self._config.redirect_uri,
            created_at=self._clock(),
        )
        self._pending = pending
        await self._state.set(PENDING_KEY, pending.model_dump(mode="json"))

        logger.info(
            "OAuth flow started (provider=%s, state=%s...)", provider.value, pending.state[:8]
        )
        return build_authorization_url(
            provider_config,
            redirect_uri=pending.redirect_uri,
            state=pending.state,
            challenge=code_challenge(verifier),
        )

    def _take_pending(self) -> OAuthPendingRequest | None:
        pending, self._pending = self._pending, None
        return pending

    async def _clear_persisted_pending(self, consumed: OAuthPendingRequest | None) -> None:
        """Best-effort removal of the durable copy; never fails the callback.

        Only the record that was consumed is removed, so a flow started while
        this callback was in progress keeps its own pending request.
        """
        try:
            stored = await self._state.get(PENDING_KEY)
            if stored is None:
                return
            if consumed is not None and isinstance(stored, dict):
                if stored.get("state") != consumed.state:
                    return
            await self._state.delete(PENDING_KEY)
        except Exception:
            logger.warning("Failed to clear the persisted OAuth request", exc_info=True)

    async def complete_flow(self, params: Mapping[str, str]) -> TokenSession:
        """Finish the flow from the provider redirect's query parameters."""
        pending = self._take_pending()
        await self._clear_persisted_pending(pending)

        try:
            provider, session = await self._complete(pending, params)
        except PlannerSyncError as exc:
            logger.warning(
                "OAuth callback rejected (provider=%s, error_code=%s): %s",
                pending.provider.value if pending is not None else "unknown",
                exc.error_code,
                exc.message,
            )
            self._notify(NoticeLevel.warn, exc.message)
            raise

        self._notify(NoticeLevel.ok, f"{provider.label} connected.")
        logger.info("OAuth flow complete (provider=%s)", provider.value)
        if self._on_connected is not None:
            self._on_connected(provider)
        return session

    async def _complete(
        self,
        pending: OAuthPendingRequest | None,
        params: Mapping[str, str],
    ) -> tuple[OAuthProvider, TokenSession]:
        if pending is None:
            raise ExpiredOrTamperedState(
                "No connection request is pending. Please start the connection again."
            )
        if not secrets.compare_digest(params.get("state") or "", pending.state):
            raise ExpiredOrTamperedState(
                "The connection request is invalid or expired. Please start it again."
            )

        error = params.get("error")
        if error:
            raise ProviderDenied(params.get("error_description") or error)

        code = params.get("code")
        if not code:
            raise TokenExchangeFailed("Authorization code is missing from the callback.")

        provider = pending.provider
        provider_config = self._config.provider(provider)
        if not provider_config.configured:
            raise MissingClientConfiguration(
                f"{provider.label} is not configured: the OAuth client id is missing."
            )

        session = await request_token(
            self._http_client,
            provider_config,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": pending.redirect_uri,
                "code_verifier": pending.code_verifier,
            },
            now=self._clock(),
            error_cls=TokenExchangeFailed,
            failure_message="Token exchange failed.",
        )
        await self._vault.store_session(provider, session)
        await self._settings.update(**{f"{provider.value}_connected": True})
        return provider, session
