"""Per-provider OAuth token sessions with refresh-on-demand.

Sessions are persisted immediately after every change so that a reload (or
the OAuth redirect itself) can always recover from durable state.  Refreshes
are single-flighted per provider: concurrent callers that find an expired
token wait on one refresh instead of each spending the refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import ValidationError

from planner_sync.config import PlannerConfig, ProviderConfig
from planner_sync.core.state import StateStore
from planner_sync.errors import (
    MissingClientConfiguration,
    PlannerSyncError,
    ProviderNotConnected,
    TokenRefreshFailed,
    extract_error_message,
)
from planner_sync.models import EventSource, OAuthProvider, TokenSession
from planner_sync.store import EventStore, SettingsStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SESSION_KEY_PREFIX = "planner::oauth::session::"
# Tokens are treated as expired this long before the provider says so.
CLOCK_SKEW = timedelta(seconds=60)
MIN_TOKEN_TTL_SECONDS = 10


def utc_now() -> datetime:
    return datetime.now(UTC)


def _session_key(provider: OAuthProvider) -> str:
    return f"{SESSION_KEY_PREFIX}{provider.value}"


def _coerce_expires_in_seconds(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_token_response(
    payload: Any,
    *,
    now: datetime,
    fallback_refresh_token: str | None = None,
) -> TokenSession | None:
    """Build a session from ``{access_token, refresh_token?, expires_in}``.

    Returns ``None`` when the payload lacks an access token, a refresh token
    (after applying *fallback_refresh_token*) or a numeric ``expires_in``.
    """
    if not isinstance(payload, dict):
        return None

    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = fallback_refresh_token
    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))

    if not isinstance(access_token, str) or not access_token.strip():
        return None
    if not refresh_token or expires_in is None:
        return None

    ttl_seconds = max(expires_in - CLOCK_SKEW.total_seconds(), MIN_TOKEN_TTL_SECONDS)
    return TokenSession(
        access_token=access_token.strip(),
        refresh_token=refresh_token.strip(),
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


async def request_token(
    http_client: httpx.AsyncClient,
    provider_config: ProviderConfig,
    form: dict[str, str],
    *,
    now: datetime,
    error_cls: type[PlannerSyncError],
    failure_message: str,
    fallback_refresh_token: str | None = None,
) -> TokenSession:
    """POST a grant to the provider token endpoint and parse the session.

    PKCE public clients send no client secret.  Microsoft additionally
    requires the scope on every token request.
    """
    body = {"client_id": provider_config.client_id, **form}
    if provider_config.provider is OAuthProvider.outlook:
        body["scope"] = provider_config.scope

    try:
        response = await http_client.post(
            provider_config.token_url,
            data=body,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        raise error_cls(f"{failure_message} ({type(exc).__name__})") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise error_cls(extract_error_message(response, failure_message))

    try:
        payload = response.json()
    except ValueError as exc:
        raise error_cls("Token endpoint returned invalid JSON.") from exc

    session = parse_token_response(
        payload,
        now=now,
        fallback_refresh_token=fallback_refresh_token,
    )
    if session is None:
        raise error_cls("Token response was incomplete.")
    return session


class TokenVault:
    """Holds one :class:`TokenSession` per connected provider."""

    def __init__(
        self,
        *,
        config: PlannerConfig,
        state: StateStore,
        http_client: httpx.AsyncClient,
        events: EventStore,
        settings: SettingsStore,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._state = state
        self._http_client = http_client
        self._events = events
        self._settings = settings
        self._clock = clock
        self._sessions: dict[OAuthProvider, TokenSession] = {}
        self._refresh_locks = {provider: asyncio.Lock() for provider in OAuthProvider}

    async def load(self) -> None:
        for provider in OAuthProvider:
            raw = await self._state.get(_session_key(provider))
            if raw is None:
                continue
            try:
                self._sessions[provider] = TokenSession.model_validate(raw)
            except ValidationError:
                logger.warning("Discarding unreadable stored session for %s", provider.value)

    def get_session(self, provider: OAuthProvider) -> TokenSession | None:
        return self._sessions.get(provider)

    async def store_session(self, provider: OAuthProvider, session: TokenSession) -> None:
        self._sessions[provider] = session
        await self._state.set(_session_key(provider), session.model_dump(mode="json"))

    def _is_fresh(self, session: TokenSession) -> bool:
        return self._clock() < session.expires_at - CLOCK_SKEW

    async def get_valid_access_token(self, provider: OAuthProvider) -> str:
        session = self._sessions.get(provider)
        if session is None:
            raise ProviderNotConnected(f"{provider.value} calendar is not connected.")
        if self._is_fresh(session):
            return session.access_token

        async with self._refresh_locks[provider]:
            session = self._sessions.get(provider)
            if session is None:
                raise ProviderNotConnected(f"{provider.value} calendar was disconnected.")
            if self._is_fresh(session):
                return session.access_token

            renewed = await self._refresh(provider, session)
            current = self._sessions.get(provider)
            if current is not session:
                # Disconnected or reconnected while the refresh was in flight.
                if current is None:
                    logger.info("Dropping refreshed %s token after disconnect", provider.value)
                    raise ProviderNotConnected(f"{provider.value} calendar was disconnected.")
                return current.access_token
            await self.store_session(provider, renewed)
            logger.info(
                "Refreshed %s access token (expires_at=%s)",
                provider.value,
                renewed.expires_at.isoformat(),
            )
            return renewed.access_token

    async def _refresh(self, provider: OAuthProvider, session: TokenSession) -> TokenSession:
        provider_config = self._config.provider(provider)
        if not provider_config.configured:
            raise MissingClientConfiguration(
                f"OAuth client id for {provider.value} is not configured."
            )
        return await request_token(
            self._http_client,
            provider_config,
            {"grant_type": "refresh_token", "refresh_token": session.refresh_token},
            now=self._clock(),
            error_cls=TokenRefreshFailed,
            failure_message="Token refresh failed.",
            fallback_refresh_token=session.refresh_token,
        )

    async def disconnect(self, provider: OAuthProvider) -> int:
        """Forget the session and every event synced from *provider*.

        The session, the provider partition and the connected flag change
        together in memory before anything is persisted.  Returns the number
        of events removed.
        """
        source = EventSource.for_provider(provider)
        self._sessions.pop(provider, None)
        dropped = self._events.drop_partition(source)
        self._settings.apply(**{f"{provider.value}_connected": False})

        await self._state.delete(_session_key(provider))
        await self._events.persist(source)
        await self._settings.persist()

        logger.info("Disconnected %s (removed %d synced events)", provider.value, dropped)
        return dropped
