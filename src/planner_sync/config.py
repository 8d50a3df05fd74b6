"""Planner sync configuration loading and validation.

Reads ``planner.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`PlannerConfig` dataclass.
Every section is optional; omitted values fall back to the defaults below.

Example::

    [planner]
    timezone = "Europe/Berlin"
    redirect_uri = "http://localhost:8400/api/oauth/callback"
    dashboard_url = "http://localhost:5173/dashboard"

    [planner.providers.google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"

    [planner.providers.outlook]
    client_id = "${MICROSOFT_OAUTH_CLIENT_ID}"
    tenant = "common"

    [planner.sync]
    auto_sync_minutes = 15
    buffer_minutes = 10

    [planner.storage]
    backend = "postgres"
    dsn = "${PLANNER_DATABASE_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from planner_sync.models import OAuthProvider

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_REDIRECT_URI = "http://localhost:8400/api/oauth/callback"
DEFAULT_TIMEZONE = "UTC"
VALID_AUTO_SYNC_MINUTES = (15, 30)
VALID_BUFFER_MINUTES = (0, 10, 15)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"

MICROSOFT_LOGIN_BASE_URL = "https://login.microsoftonline.com"
MICROSOFT_GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_CALENDAR_SCOPE = "https://graph.microsoft.com/Calendars.Read"

_CLIENT_ID_ENV = {
    OAuthProvider.google: "GOOGLE_OAUTH_CLIENT_ID",
    OAuthProvider.outlook: "MICROSOFT_OAUTH_CLIENT_ID",
}


class ConfigError(Exception):
    """Raised when planner configuration is missing, malformed, or invalid."""


@dataclass
class ProviderConfig:
    """OAuth client and endpoint settings for one calendar provider."""

    provider: OAuthProvider
    client_id: str = ""
    authorize_url: str = ""
    token_url: str = ""
    api_base_url: str = ""
    scope: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id.strip())


def google_provider_config(client_id: str = "") -> ProviderConfig:
    return ProviderConfig(
        provider=OAuthProvider.google,
        client_id=client_id,
        authorize_url=GOOGLE_AUTH_URL,
        token_url=GOOGLE_TOKEN_URL,
        api_base_url=GOOGLE_CALENDAR_API_BASE_URL,
        scope=f"openid email profile {GOOGLE_CALENDAR_SCOPE}",
    )


def outlook_provider_config(client_id: str = "", tenant: str = "common") -> ProviderConfig:
    return ProviderConfig(
        provider=OAuthProvider.outlook,
        client_id=client_id,
        authorize_url=f"{MICROSOFT_LOGIN_BASE_URL}/{tenant}/oauth2/v2.0/authorize",
        token_url=f"{MICROSOFT_LOGIN_BASE_URL}/{tenant}/oauth2/v2.0/token",
        api_base_url=MICROSOFT_GRAPH_API_BASE_URL,
        scope=f"openid profile offline_access User.Read {MICROSOFT_CALENDAR_SCOPE}",
    )


@dataclass
class SyncConfig:
    """Sync tuning from [planner.sync]."""

    auto_sync_minutes: int = 15
    buffer_minutes: int = 10
    feed_url: str = ""
    http_timeout_s: float = 30.0


@dataclass
class StorageConfig:
    """Persistence backend from [planner.storage]."""

    backend: str = "memory"  # "memory" or "postgres"
    dsn: str = ""


@dataclass
class LoggingConfig:
    """Logging configuration from [planner.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ApiConfig:
    """HTTP surface from [planner.api]."""

    host: str = "127.0.0.1"
    port: int = 8400
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])


@dataclass
class PlannerConfig:
    """Parsed and validated planner sync configuration."""

    timezone: str = DEFAULT_TIMEZONE
    redirect_uri: str = DEFAULT_REDIRECT_URI
    dashboard_url: str | None = None
    providers: dict[OAuthProvider, ProviderConfig] = field(
        default_factory=lambda: {
            OAuthProvider.google: google_provider_config(),
            OAuthProvider.outlook: outlook_provider_config(),
        }
    )
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def provider(self, provider: OAuthProvider) -> ProviderConfig:
        return self.providers[provider]


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _table(section: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = section.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path}.{key} must be a TOML table")
    return value


def _validate_timezone(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("planner.timezone must be a non-empty string")
    try:
        ZoneInfo(value.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"planner.timezone is not a known IANA zone: {value!r}") from exc
    return value.strip()


def _parse_providers(section: dict[str, Any]) -> dict[OAuthProvider, ProviderConfig]:
    providers_section = _table(section, "providers", "planner")
    for name in providers_section:
        if name not in OAuthProvider.__members__:
            raise ConfigError(f"Unknown provider in planner.providers: {name!r}")

    google_section = _table(providers_section, "google", "planner.providers")
    outlook_section = _table(providers_section, "outlook", "planner.providers")

    google_client_id = str(
        google_section.get("client_id") or os.environ.get(_CLIENT_ID_ENV[OAuthProvider.google], "")
    ).strip()
    outlook_client_id = str(
        outlook_section.get("client_id")
        or os.environ.get(_CLIENT_ID_ENV[OAuthProvider.outlook], "")
    ).strip()
    tenant = str(outlook_section.get("tenant", "common")).strip() or "common"

    google = google_provider_config(google_client_id)
    outlook = outlook_provider_config(outlook_client_id, tenant=tenant)
    for provider_config, raw in ((google, google_section), (outlook, outlook_section)):
        scope = raw.get("scope")
        if scope is not None:
            if not isinstance(scope, str) or not scope.strip():
                raise ConfigError(
                    f"planner.providers.{provider_config.provider.value}.scope "
                    "must be a non-empty string when set"
                )
            provider_config.scope = " ".join(scope.split())
    return {OAuthProvider.google: google, OAuthProvider.outlook: outlook}


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    sync_section = _table(section, "sync", "planner")
    auto_sync_minutes = sync_section.get("auto_sync_minutes", 15)
    if auto_sync_minutes not in VALID_AUTO_SYNC_MINUTES:
        raise ConfigError(
            f"planner.sync.auto_sync_minutes must be one of {VALID_AUTO_SYNC_MINUTES}, "
            f"got {auto_sync_minutes!r}"
        )
    buffer_minutes = sync_section.get("buffer_minutes", 10)
    if buffer_minutes not in VALID_BUFFER_MINUTES:
        raise ConfigError(
            f"planner.sync.buffer_minutes must be one of {VALID_BUFFER_MINUTES}, "
            f"got {buffer_minutes!r}"
        )
    feed_url = sync_section.get("feed_url", "")
    if not isinstance(feed_url, str):
        raise ConfigError("planner.sync.feed_url must be a string")
    http_timeout_s = float(sync_section.get("http_timeout_s", 30.0))
    if http_timeout_s <= 0:
        raise ConfigError("planner.sync.http_timeout_s must be positive")
    return SyncConfig(
        auto_sync_minutes=int(auto_sync_minutes),
        buffer_minutes=int(buffer_minutes),
        feed_url=feed_url.strip(),
        http_timeout_s=http_timeout_s,
    )


def _parse_storage(section: dict[str, Any]) -> StorageConfig:
    storage_section = _table(section, "storage", "planner")
    backend = str(storage_section.get("backend", "memory")).strip().lower()
    if backend not in ("memory", "postgres"):
        raise ConfigError(
            f"planner.storage.backend must be 'memory' or 'postgres', got {backend!r}"
        )
    dsn = str(storage_section.get("dsn", "")).strip()
    if backend == "postgres" and not dsn:
        raise ConfigError("planner.storage.dsn is required when backend = 'postgres'")
    return StorageConfig(backend=backend, dsn=dsn)


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    logging_section = _table(section, "logging", "planner")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"planner.logging.format must be 'text' or 'json', got {log_format!r}")
    log_root = logging_section.get("log_root")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )


def _parse_api(section: dict[str, Any]) -> ApiConfig:
    api_section = _table(section, "api", "planner")
    port = api_section.get("port", 8400)
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"planner.api.port must be a valid TCP port, got {port!r}")
    cors_origins = api_section.get("cors_origins", ["http://localhost:5173"])
    if not isinstance(cors_origins, list) or not all(isinstance(o, str) for o in cors_origins):
        raise ConfigError("planner.api.cors_origins must be a list of strings")
    return ApiConfig(
        host=str(api_section.get("host", "127.0.0.1")),
        port=port,
        cors_origins=cors_origins,
    )


def parse_config(data: dict[str, Any]) -> PlannerConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    section = data.get("planner", {})
    if not isinstance(section, dict):
        raise ConfigError("[planner] must be a TOML table")

    redirect_uri = str(section.get("redirect_uri", DEFAULT_REDIRECT_URI)).strip()
    if not redirect_uri.startswith(("http://", "https://")):
        raise ConfigError(f"planner.redirect_uri must be an http(s) URL, got {redirect_uri!r}")
    dashboard_url = section.get("dashboard_url")
    if dashboard_url is not None and not isinstance(dashboard_url, str):
        raise ConfigError("planner.dashboard_url must be a string when set")

    return PlannerConfig(
        timezone=_validate_timezone(section.get("timezone", DEFAULT_TIMEZONE)),
        redirect_uri=redirect_uri,
        dashboard_url=(dashboard_url or "").strip() or None,
        providers=_parse_providers(section),
        sync=_parse_sync(section),
        storage=_parse_storage(section),
        logging=_parse_logging(section),
        api=_parse_api(section),
    )


def load_config(path: Path) -> PlannerConfig:
    """Load and validate a planner TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
