"""Tests for CLI logging helpers."""

import json
import logging
import sys

from localsync.__main__ import JSONFormatter


def _record(msg, exc_info=None):
    return logging.LogRecord(
        name="localsync.sync.coordinator",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_line_carries_node_name():
    line = JSONFormatter("field-laptop").format(_record("Sync aborted"))

    data = json.loads(line)
    assert data["node"] == "field-laptop"
    assert data["logger"] == "localsync.sync.coordinator"
    assert data["level"] == "WARNING"
    assert data["msg"] == "Sync aborted"
    assert data["ts"].endswith("+00:00")


def test_json_line_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record("failed", exc_info=sys.exc_info())

    data = json.loads(JSONFormatter().format(record))

    assert data["node"] is None
    assert "RuntimeError: boom" in data["exc"]
