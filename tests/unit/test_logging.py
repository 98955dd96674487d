"""
Unit tests for circulation.core.logging – JSONFormatter, context variables, logger factory.
"""
import json
import logging
import sys

import pytest

from circulation.core.logging import (
    JSONFormatter,
    get_logger,
    request_id_ctx,
    current_user_id_ctx,
    sweep_id_ctx,
    setup_logging,
)


def _make_record(message="test msg", level=logging.INFO, name="test"):
    return logging.getLogger(name).makeRecord(
        name=name, level=level, fn="test.py", lno=1, msg=message, args=(), exc_info=None,
    )


def _format(record) -> dict:
    return json.loads(JSONFormatter().format(record))


class TestJSONFormatter:
    def test_required_fields(self):
        parsed = _format(_make_record("hello", level=logging.WARNING, name="services.loan"))
        assert parsed["message"] == "hello"
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "services.loan"
        assert "T" in parsed["timestamp"]

    @pytest.mark.parametrize(
        "ctx, field",
        [
            (request_id_ctx, "request_id"),
            (current_user_id_ctx, "user_id"),
            (sweep_id_ctx, "sweep_id"),
        ],
    )
    def test_context_field_included_when_set(self, ctx, field):
        token = ctx.set("abc123")
        try:
            assert _format(_make_record())[field] == "abc123"
        finally:
            ctx.reset(token)

    def test_context_fields_absent_by_default(self):
        parsed = _format(_make_record())
        assert "request_id" not in parsed
        assert "user_id" not in parsed
        assert "sweep_id" not in parsed

    def test_includes_extra_data(self):
        record = _make_record()
        record.extra_data = {"loan_id": "loan-99", "candidates_overdue": 3}
        parsed = _format(record)
        assert parsed["loan_id"] == "loan-99"
        assert parsed["candidates_overdue"] == 3

    def test_includes_exception_info(self):
        try:
            raise ValueError("test error")
        except ValueError:
            record = _make_record()
            record.exc_info = sys.exc_info()
            parsed = _format(record)
        assert "ValueError" in parsed["exception"]


class TestGetLogger:
    def test_named_logger(self):
        logger = get_logger("services.overdue")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "services.overdue"
        assert get_logger("services.overdue") is logger


class TestSetupLogging:
    def test_root_handler_uses_json_formatter(self):
        setup_logging()
        root = logging.getLogger()
        assert any(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
