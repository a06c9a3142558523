from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator

import pytest

from cifar_ai.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    _parse_evt_fields,
    get_logger,
    init_logging,
    log_event,
)
from cifar_ai.request_context import request_id_var


@pytest.fixture
def json_buf() -> Iterator[io.StringIO]:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        yield buf
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)


def test_log_event_json_fields(json_buf: io.StringIO) -> None:
    token = request_id_var.set("rid-1")
    try:
        log_event(
            "classify_finished",
            {"latency_ms": 12, "label": "airplane", "confidence": 0.7, "model_id": "m 1"},
        )
    finally:
        request_id_var.reset(token)
    payload = json.loads(json_buf.getvalue().strip().splitlines()[-1])
    assert payload["message"] == "classify_finished"
    assert payload["latency_ms"] == 12
    assert payload["label"] == "airplane"
    assert payload["confidence"] == 0.7
    assert payload["request_id"] == "rid-1"
    # Values with whitespace are dropped
    assert "model_id" not in payload


def test_exc_info_present_in_json(json_buf: io.StringIO) -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        get_logger().exception("oops")
    out = json_buf.getvalue()
    assert '"exc_info":' in out and "Traceback" in out


def test_plain_message_untouched(json_buf: io.StringIO) -> None:
    get_logger().info("hello world")
    assert '"message": "hello world"' in json_buf.getvalue()


def test_parse_evt_fields_types() -> None:
    got = _parse_evt_fields("EVT event=model_loaded shards=3 source=https://x/ ok=true junk")
    assert got == {"event": "model_loaded", "shards": 3, "source": "https://x/", "ok": True}
    assert _parse_evt_fields("model_loaded shards=3") == {}


def test_console_formatter_highlights_event_and_pairs() -> None:
    msg = "model_source_failed source=a"
    rec = logging.LogRecord("cifar_ai", logging.WARNING, __file__, 1, msg, None, None)
    out = _ConsoleFormatter().format(rec)
    assert "[WARN]" in out and "model_source_failed" in out and "source" in out
    rec2 = logging.LogRecord("cifar_ai", logging.DEBUG, __file__, 1, "", None, None)
    assert "[DEBUG]" in _ConsoleFormatter().format(rec2)


def test_init_logging_single_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CIFAR_LOG_LEVEL", "debug")
    monkeypatch.setenv("CIFAR_LOG_JSON", "1")
    logger = init_logging()
    init_logging()
    streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(streams) == 1
    assert isinstance(streams[0].formatter, _JsonFormatter)
    assert logger.level == logging.DEBUG
    assert isinstance(init_logging("pretty").handlers[0].formatter, _ConsoleFormatter)
