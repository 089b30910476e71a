"""Tests for logging setup."""

import json

import structlog

from taskengine.infrastructure.logger import setup_logging


class TestSetupLogging:
    def _emit(self, monkeypatch, capsys, **env):
        saved = structlog.get_config()
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        try:
            log = setup_logging()
            log.info("hidden event")
            log.warning("shown event", task_id="task-1")
        finally:
            structlog.configure(**saved)
        return capsys.readouterr().err

    def test_level_drops_quieter_events(self, monkeypatch, capsys):
        err = self._emit(monkeypatch, capsys, LOG_LEVEL="WARNING")
        assert "shown event" in err
        assert "hidden event" not in err

    def test_json_format(self, monkeypatch, capsys):
        err = self._emit(monkeypatch, capsys, LOG_LEVEL="WARNING", LOG_FORMAT="json")
        [line] = err.strip().splitlines()
        record = json.loads(line)
        assert record["event"] == "shown event"
        assert record["level"] == "warning"
        assert record["task_id"] == "task-1"
