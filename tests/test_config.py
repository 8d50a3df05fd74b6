"""Tests for planner configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from planner_sync.config import (
    DEFAULT_REDIRECT_URI,
    ConfigError,
    PlannerConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)
from planner_sync.models import OAuthProvider

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[planner]
timezone = "Europe/Berlin"
redirect_uri = "https://planner.example.com/api/oauth/callback"
dashboard_url = "https://planner.example.com/dashboard"

[planner.providers.google]
client_id = "google-client"

[planner.providers.outlook]
client_id = "outlook-client"
tenant = "consumers"
scope = "openid   offline_access Calendars.Read"

[planner.sync]
auto_sync_minutes = 30
buffer_minutes = 15
feed_url = "https://calendar.example.com/team.ics"
http_timeout_s = 10

[planner.storage]
backend = "postgres"
dsn = "postgresql://planner@localhost/planner"

[planner.logging]
level = "debug"
format = "json"
log_root = "logs"

[planner.api]
host = "0.0.0.0"
port = 9000
cors_origins = ["https://planner.example.com"]
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "planner.toml") -> Path:
    """Write *content* to a TOML file inside *tmp_path* and return its path."""
    path = tmp_path / filename
    path.write_text(content)
    return path


@pytest.fixture(autouse=True)
def _no_client_id_env(monkeypatch):
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_ID", raising=False)
    monkeypatch.delenv("MICROSOFT_OAUTH_CLIENT_ID", raising=False)


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path):
    config = load_config(_write_toml(tmp_path, FULL_TOML))

    assert config.timezone == "Europe/Berlin"
    assert config.redirect_uri == "https://planner.example.com/api/oauth/callback"
    assert config.dashboard_url == "https://planner.example.com/dashboard"

    google = config.provider(OAuthProvider.google)
    assert google.client_id == "google-client"
    assert google.configured is True

    outlook = config.provider(OAuthProvider.outlook)
    assert outlook.client_id == "outlook-client"
    assert outlook.token_url == "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    assert outlook.scope == "openid offline_access Calendars.Read"

    assert config.sync.auto_sync_minutes == 30
    assert config.sync.buffer_minutes == 15
    assert config.sync.feed_url == "https://calendar.example.com/team.ics"
    assert config.sync.http_timeout_s == 10.0
    assert config.storage.backend == "postgres"
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.log_root == "logs"
    assert config.api.port == 9000
    assert config.api.cors_origins == ["https://planner.example.com"]


def test_empty_document_uses_defaults(tmp_path: Path):
    config = load_config(_write_toml(tmp_path, ""))

    assert config.timezone == "UTC"
    assert config.redirect_uri == DEFAULT_REDIRECT_URI
    assert config.dashboard_url is None
    assert config.provider(OAuthProvider.google).configured is False
    assert config.provider(OAuthProvider.outlook).configured is False
    assert config.sync.auto_sync_minutes == 15
    assert config.sync.buffer_minutes == 10
    assert config.storage.backend == "memory"


def test_default_dataclass_matches_empty_document():
    assert parse_config({}) == PlannerConfig()


def test_client_id_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "from-env")
    config = parse_config({})
    assert config.provider(OAuthProvider.google).client_id == "from-env"


def test_env_var_references_resolved(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("PLANNER_DSN", "postgresql://db/planner")
    content = '[planner.storage]\nbackend = "postgres"\ndsn = "${PLANNER_DSN}"\n'
    config = load_config(_write_toml(tmp_path, content))
    assert config.storage.dsn == "postgresql://db/planner"


def test_resolve_env_vars_recurses(monkeypatch):
    monkeypatch.setenv("A_VALUE", "a")
    assert resolve_env_vars({"x": ["${A_VALUE}", 1], "y": "pre-${A_VALUE}"}) == {
        "x": ["a", 1],
        "y": "pre-a",
    }


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


def test_missing_config_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.toml")


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[planner\ntimezone = "))


def test_unresolved_env_var_reports_every_name(monkeypatch):
    monkeypatch.delenv("MISSING_ONE", raising=False)
    monkeypatch.delenv("MISSING_TWO", raising=False)
    with pytest.raises(ConfigError, match="MISSING_ONE, MISSING_TWO"):
        resolve_env_vars("${MISSING_ONE}:${MISSING_TWO}")


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ({"planner": {"timezone": "Mars/Olympus"}}, "IANA"),
        ({"planner": {"redirect_uri": "ftp://x"}}, "redirect_uri"),
        ({"planner": {"providers": {"yahoo": {}}}}, "Unknown provider"),
        ({"planner": {"providers": {"google": {"scope": ""}}}}, "scope"),
        ({"planner": {"sync": {"auto_sync_minutes": 5}}}, "auto_sync_minutes"),
        ({"planner": {"sync": {"buffer_minutes": 20}}}, "buffer_minutes"),
        ({"planner": {"sync": {"http_timeout_s": 0}}}, "http_timeout_s"),
        ({"planner": {"storage": {"backend": "sqlite"}}}, "backend"),
        ({"planner": {"storage": {"backend": "postgres"}}}, "dsn"),
        ({"planner": {"logging": {"format": "xml"}}}, "format"),
        ({"planner": {"api": {"port": 70000}}}, "port"),
        ({"planner": {"api": {"cors_origins": "*"}}}, "cors_origins"),
        ({"planner": {"sync": "fast"}}, "TOML table"),
        ({"planner": "yes"}, "TOML table"),
    ],
)
def test_invalid_values_rejected(document, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(document)
