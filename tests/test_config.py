from __future__ import annotations

import pytest
from pydantic import ValidationError

from hotelops.core.config import Settings, get_settings


def test_worker_budget_leaves_safety_margin():
    settings = Settings(platform_timeout_seconds=60, budget_safety_margin_seconds=10, queue_batch_delay_ms=250)

    assert settings.worker_budget_seconds == 50
    assert settings.queue_batch_delay_seconds == 0.25


def test_margin_must_be_below_platform_timeout():
    with pytest.raises(ValidationError):
        Settings(platform_timeout_seconds=10, budget_safety_margin_seconds=10)


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_REOPENS", "4")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://env/hotelops")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.max_reopens == 4
        assert settings.postgres_dsn == "postgresql://env/hotelops"
        assert get_settings() is settings
    finally:
        get_settings.cache_clear()
