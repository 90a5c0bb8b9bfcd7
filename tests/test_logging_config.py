"""Tests for structured logging configuration."""

import json
import logging

import pytest

from deployctl.core.logging_config import (
    DEPLOYMENT_LOGGER,
    ColoredFormatter,
    JSONFormatter,
    OperationTimer,
    SessionContextAdapter,
    get_logger,
    log_deployment_event,
    log_operation,
    setup_logging,
)


def _record(msg="hello", level=logging.INFO, **context):
    record = logging.LogRecord("test", level, "/srv/app.py", 10, msg, None, None)
    if context:
        record.context = context
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "hello"
        assert "context" not in data
        assert "source" not in data

    def test_context_nested(self):
        data = json.loads(JSONFormatter().format(_record(session_id="abc", percentage=20.0)))

        assert data["context"] == {"session_id": "abc", "percentage": 20.0}

    def test_warning_includes_source(self):
        data = json.loads(JSONFormatter().format(_record(level=logging.WARNING)))

        assert data["source"] == "/srv/app.py:10"


class TestColoredFormatter:
    def test_rollout_prefix(self):
        record = _record(target="checkout", session_id="0123456789abcdef")
        output = ColoredFormatter("%(levelname)s %(message)s").format(record)

        assert output.endswith("[checkout#01234567] hello")
        assert record.levelname == "INFO"

    def test_no_prefix_without_context(self):
        output = ColoredFormatter("%(message)s").format(_record())

        assert output == "hello"

    def test_target_only(self):
        assert ColoredFormatter.rollout_tag({"target": "api"}) == "[api] "


class TestGetLogger:
    def test_plain_logger_without_context(self):
        assert isinstance(get_logger("deployctl.test"), logging.Logger)

    def test_adapter_with_context(self):
        adapter = get_logger("deployctl.test", session_id="abc")

        assert isinstance(adapter, SessionContextAdapter)
        msg, kwargs = adapter.process("hi", {"extra": {"context": {"step_index": 2}}})
        assert kwargs["extra"]["context"] == {"session_id": "abc", "step_index": 2}

    def test_adapter_records_carry_context(self, caplog):
        with caplog.at_level(logging.INFO, logger="deployctl.test"):
            get_logger("deployctl.test", target="checkout").info("applied")

        assert caplog.records[-1].context == {"target": "checkout"}


class TestLogDeploymentEvent:
    def test_structured_record(self, caplog):
        with caplog.at_level(logging.INFO, logger=DEPLOYMENT_LOGGER):
            log_deployment_event("abc", "checkout", "MONITORING", percentage=10.0, detail=None)

        record = caplog.records[-1]
        assert record.name == DEPLOYMENT_LOGGER
        assert record.getMessage() == "checkout -> MONITORING"
        assert record.context == {
            "session_id": "abc",
            "target": "checkout",
            "event": "MONITORING",
            "percentage": 10.0,
        }


class TestLogOperation:
    def test_success(self):
        with log_operation("set_split") as timer:
            pass

        assert timer.ok
        assert timer.elapsed_ms >= 0

    def test_failure_reraised_and_logged(self, caplog):
        with caplog.at_level(logging.WARNING):
            with pytest.raises(ValueError):
                with log_operation("set_split") as timer:
                    raise ValueError("boom")

        assert timer.ok is False
        assert timer.error == "ValueError: boom"
        assert "set_split failed" in caplog.text

    def test_timer_to_dict(self):
        timer = OperationTimer(name="fetch_counts", started=0.0, elapsed_ms=1.23456)

        assert timer.to_dict() == {"operation": "fetch_counts", "elapsed_ms": 1.235, "ok": True}


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        deployment = logging.getLogger(DEPLOYMENT_LOGGER)
        deployment_handlers = list(deployment.handlers)
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        for handler in deployment.handlers:
            if handler not in deployment_handlers:
                handler.close()
        deployment.handlers[:] = deployment_handlers

    def test_json_console(self):
        setup_logging(level="debug", json_format=True)
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(level="chatty")

        assert logging.getLogger().level == logging.INFO
        assert isinstance(logging.getLogger().handlers[0].formatter, ColoredFormatter)

    def test_deployment_log_file(self, tmp_path):
        path = tmp_path / "logs" / "deployments.jsonl"
        setup_logging(deployment_log_file=str(path))

        log_deployment_event("abc", "checkout", "SUCCEEDED")
        for handler in logging.getLogger(DEPLOYMENT_LOGGER).handlers:
            handler.flush()

        lines = path.read_text().strip().splitlines()
        assert json.loads(lines[-1])["context"]["event"] == "SUCCEEDED"
