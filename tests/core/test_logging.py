"""Tests for appdb.core.logging helpers."""

import pytest
import structlog

from appdb.core.logging import LogContext, get_logger, log_duration


class TestLogContext:
    def test_binds_and_unbinds(self):
        with LogContext(direction="up", run_id="abc123"):
            assert structlog.contextvars.get_contextvars() == {"direction": "up", "run_id": "abc123"}
        assert structlog.contextvars.get_contextvars() == {}


class TestLogDuration:
    def test_started_and_finished(self, log_events):
        with log_duration("database_setup", engine="sqlite"):
            pass

        assert [e["event"] for e in log_events] == ["database_setup_started", "database_setup_finished"]
        finished = log_events[-1]
        assert finished["failed"] is False
        assert finished["engine"] == "sqlite"
        assert finished["elapsed_ms"] >= 0

    def test_failure_is_logged_and_propagates(self, log_events):
        with pytest.raises(RuntimeError):
            with log_duration("database_setup"):
                raise RuntimeError("boom")
        assert log_events[-1]["failed"] is True


def test_get_logger_emits_key_values(log_events):
    get_logger("appdb.test").warning("lock_held", locked_by="web-1 (7)")
    assert log_events == [{"event": "lock_held", "locked_by": "web-1 (7)", "log_level": "warning"}]
