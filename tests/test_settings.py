"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import Settings


def test_defaults_without_environment() -> None:
    """Settings should load sensible defaults when nothing is configured."""

    settings = Settings(_env_file=None)

    assert settings.page_size == 20
    assert settings.progress_cache_ttl_seconds == 86_400
    assert settings.watchlist_cache_ttl_seconds == 300
    assert settings.cache_key_prefix == "watchsync_"
    assert settings.jellyfin_token is None
    assert settings.owner_key == "anonymous"


def test_blank_credentials_are_treated_as_missing() -> None:
    settings = Settings(_env_file=None, JELLYFIN_TOKEN="   ", JELLYFIN_USER_ID=" abc ")

    assert settings.jellyfin_token is None
    assert settings.jellyfin_user_id == "abc"
    assert settings.owner_key == "abc"


def test_server_url_drops_trailing_slash() -> None:
    settings = Settings(_env_file=None, JELLYFIN_URL="http://media.local:8096/")

    assert settings.server_url == "http://media.local:8096"


@pytest.mark.parametrize(
    "overrides",
    [{"PAGE_SIZE": 0}, {"REQUEST_RETRY_LIMIT": 11}, {"WATCHLIST_POLL_INTERVAL": 0.5}],
)
def test_out_of_range_values_are_rejected(overrides) -> None:
    """Bounded settings should raise a validation error."""

    with pytest.raises(ValueError):
        Settings(_env_file=None, **overrides)


def test_environment_variables_are_read(monkeypatch) -> None:
    monkeypatch.setenv("PAGE_SIZE", "50")
    monkeypatch.setenv("PROGRESS_CACHE_TTL", "60")

    settings = Settings(_env_file=None)

    assert settings.page_size == 50
    assert settings.progress_cache_ttl_seconds == 60
