"""
Tests for settings, paths and logging setup.
"""
import json
import logging

import pytest
from pydantic import ValidationError

from config.paths import default_database_url, resolve_app_data_dir
from config.settings import Settings, get_settings, reset_settings
from services.logging_service import (
    StructuredFormatter, configure_file_logging, cycle_id_ctx, get_cycle_id,
)


@pytest.fixture(autouse=True)
def isolated_app_data(tmp_path, monkeypatch):
    monkeypatch.setenv("SENTINEL_APP_DATA_DIR", str(tmp_path / "appdata"))
    reset_settings()
    yield
    reset_settings()


def test_app_data_dir_override(tmp_path):
    assert resolve_app_data_dir() == (tmp_path / "appdata").resolve()
    assert default_database_url().endswith("sentinel.db")


def test_settings_defaults():
    settings = Settings()
    assert settings.tick_interval_seconds == 60.0
    assert settings.stats_batch_size == 1000
    assert settings.retry_max_attempts == 3
    assert settings.database_url.startswith("sqlite:///")


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SENTINEL_TICK_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    settings = get_settings()
    assert settings.tick_interval_seconds == 15.0
    assert settings.database_url == "sqlite:///:memory:"
    assert get_settings() is settings


def test_settings_reject_non_positive_tick(monkeypatch):
    monkeypatch.setenv("SENTINEL_TICK_INTERVAL_SECONDS", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_structured_formatter_includes_cycle_id():
    record = logging.LogRecord("engine", logging.INFO, __file__, 1, "evaluated %d rules", (3,), None)
    token = cycle_id_ctx.set("abc123")
    try:
        assert get_cycle_id() == "abc123"
        payload = json.loads(StructuredFormatter().format(record))
    finally:
        cycle_id_ctx.reset(token)
    assert payload["message"] == "evaluated 3 rules"
    assert payload["cycle_id"] == "abc123"
    assert payload["level"] == "INFO"


def test_configure_file_logging(tmp_path):
    log_dir = configure_file_logging(str(tmp_path / "logs"))
    root = logging.getLogger()
    try:
        logging.getLogger("sentinel.test").warning("hello file")
        for handler in root.handlers:
            handler.flush()
        content = (log_dir / "sentinel.log").read_text(encoding="utf-8")
        assert "hello file" in content
    finally:
        for handler in list(root.handlers):
            if getattr(handler, "name", "") == "sentinel_file_handler":
                root.removeHandler(handler)
                handler.close()
