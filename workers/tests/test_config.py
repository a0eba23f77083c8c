from __future__ import annotations

import pytest

from profile_workers.config import Config

_OPTIONAL_VARS = (
    "PROFILE_LISTEN_DATABASE_URL",
    "PROFILE_POLL_INTERVAL",
    "PROFILE_BATCH_SIZE",
    "PROFILE_MAX_RETRIES",
    "PROFILE_ACTIVITY_FIRST_RETRY_MS",
    "PROFILE_ACTIVITY_BACKOFF",
    "PROFILE_ACTIVITY_MAX_ATTEMPTS",
    "PROFILE_VALIDATION_TOKEN_TTL_HOURS",
    "PROFILE_VALIDATION_URL",
    "PROFILE_CHANGE_FEED_GRACE_SECONDS",
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_from_env_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        Config.from_env()


def test_config_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/profiles")

    cfg = Config.from_env()
    assert cfg.listen_database_url == "postgresql://app@db/profiles"
    assert cfg.max_retries == 3
    assert cfg.activity_first_retry_ms == 5000
    assert cfg.activity_backoff_coefficient == 1.5
    assert cfg.activity_max_attempts == 10
    assert cfg.validation_token_ttl_hours == 720
    assert cfg.change_feed_grace_seconds == 30.0


def test_config_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://app@db/profiles")
    monkeypatch.setenv("PROFILE_LISTEN_DATABASE_URL", "postgresql://app@db/direct")
    monkeypatch.setenv("PROFILE_ACTIVITY_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("PROFILE_ACTIVITY_BACKOFF", "2")
    monkeypatch.setenv("PROFILE_VALIDATION_URL", "https://io.example/validate")
    monkeypatch.setenv("PROFILE_CHANGE_FEED_GRACE_SECONDS", "5")

    cfg = Config.from_env()
    assert cfg.listen_database_url == "postgresql://app@db/direct"
    assert cfg.activity_max_attempts == 4
    assert cfg.activity_backoff_coefficient == 2.0
    assert cfg.validation_url == "https://io.example/validate"
    assert cfg.change_feed_grace_seconds == 5.0
