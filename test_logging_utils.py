"""Tests for structured JSON logging."""

import json
import logging

from notifier.logging_utils import CustomJsonFormatter, batch_context, request_id_ctx


def render(message: str = "hello", **extra) -> dict:
    formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')
    record = logging.LogRecord("notifier.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestCustomJsonFormatter:

    def test_required_keys(self):
        data = render()

        assert data["level"] == "INFO"
        assert data["message"] == "hello"
        assert data["ts"].endswith("Z")
        assert "request_id" not in data
        assert "batch_id" not in data

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-1")
        try:
            data = render()
        finally:
            request_id_ctx.reset(token)

        assert data["request_id"] == "req-1"

    def test_batch_context(self):
        with batch_context(7):
            inside = render()
        outside = render()

        assert inside["batch_id"] == 7
        assert "batch_id" not in outside

    def test_explicit_extra_wins(self):
        with batch_context(7):
            data = render(batch_id=8)

        assert data["batch_id"] == 8
