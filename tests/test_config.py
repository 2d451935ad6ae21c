from __future__ import annotations

from pathlib import Path

import allure
import pytest

from dualpath.config import (
    ApiSettings,
    QueueSettings,
    ResponderSettings,
    RoutingSettings,
    Settings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_reads_queue_and_routing_overrides(monkeypatch) -> None:
    monkeypatch.setenv("DUALPATH_STALE_THRESHOLD_SECONDS", "60")
    monkeypatch.setenv("DUALPATH_HANDLER_TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("DUALPATH_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("DUALPATH_CONCURRENCY", "7")
    monkeypatch.setenv("DUALPATH_CLEANUP_BEFORE_BATCH", "off")
    monkeypatch.setenv("DUALPATH_AMBIGUITY_THRESHOLD", "0.6")

    settings = Settings.from_env(db_path=Path("explicit.db"))

    assert settings.db_path == Path("explicit.db")
    assert settings.queue.stale_threshold_seconds == 60
    assert settings.queue.max_attempts == 5
    assert settings.queue.concurrency == 7
    assert settings.queue.cleanup_before_batch is False
    assert settings.routing.ambiguity_threshold == 0.6
    settings.validate()


def test_from_env_defaults_are_valid() -> None:
    settings = Settings.from_env()

    assert settings.queue.max_attempts == 3
    assert settings.responder.handler_timeout_seconds < settings.queue.stale_threshold_seconds
    assert settings.api.is_development is True
    settings.validate()


def test_invalid_boolean_env_value_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("DUALPATH_CLEANUP_BEFORE_BATCH", "sometimes")

    with pytest.raises(ValueError, match="DUALPATH_CLEANUP_BEFORE_BATCH"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "env_name"),
    [
        (Settings(queue=QueueSettings(max_attempts=0)), "DUALPATH_MAX_ATTEMPTS"),
        (Settings(queue=QueueSettings(concurrency=0)), "DUALPATH_CONCURRENCY"),
        (Settings(queue=QueueSettings(stale_threshold_seconds=0)), "STALE_THRESHOLD"),
        (
            Settings(routing=RoutingSettings(bypass_confidence_threshold=1.5)),
            "DUALPATH_BYPASS_CONFIDENCE_THRESHOLD",
        ),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, env_name: str) -> None:
    with pytest.raises(ValueError, match=env_name):
        settings.validate()


def test_production_requires_worker_secret() -> None:
    settings = Settings(api=ApiSettings(environment="production"))

    with pytest.raises(ValueError, match="DUALPATH_CRON_SECRET"):
        settings.validate()

    Settings(api=ApiSettings(environment="production", cron_secret="s3cret")).validate()


@pytest.mark.parametrize("handler_timeout", [300.0, 400.0])
def test_handler_timeout_must_stay_below_stale_threshold(handler_timeout: float) -> None:
    settings = Settings(
        queue=QueueSettings(stale_threshold_seconds=300),
        responder=ResponderSettings(handler_timeout_seconds=handler_timeout),
    )

    with pytest.raises(ValueError, match="DUALPATH_HANDLER_TIMEOUT_SECONDS"):
        settings.validate()


def test_lower_stale_threshold_requires_lower_handler_timeout(monkeypatch) -> None:
    monkeypatch.setenv("DUALPATH_STALE_THRESHOLD_SECONDS", "60")

    with pytest.raises(ValueError, match="DUALPATH_STALE_THRESHOLD_SECONDS"):
        Settings.from_env().validate()
