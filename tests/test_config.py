import json

import structlog

from runmet.config import Settings
from runmet.logging_config import configure_logging


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("RUNMET_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("RUNMET_DRIFT_ERROR_THRESHOLD", "25")

    settings = Settings()

    assert settings.timezone == "Europe/Berlin"
    assert settings.drift_error_threshold == 25
    assert settings.week_start == 6


def test_configure_logging_emits_json(capsys):
    log = configure_logging(component="test", level="INFO")
    try:
        log.info("cache_rebuilt", runs=3)
        log.debug("hidden")
    finally:
        structlog.reset_defaults()

    lines = [line for line in capsys.readouterr().out.splitlines() if line]
    assert len(lines) == 1
    event = json.loads(lines[0])
    assert event["event"] == "cache_rebuilt"
    assert event["component"] == "test"
    assert event["runs"] == 3
    assert event["level"] == "info"
