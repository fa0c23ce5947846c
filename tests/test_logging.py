"""Tests for the log formatter, setup and the Loki handler."""

import logging

import pytest
import requests

from gatewrap.log.setup import MainFormatter, setup_logging
from gatewrap.log.handler import LokiHandler


def make_record(name, msg, level=logging.INFO):
    return logging.LogRecord(name, level, __file__, 1, msg, None, None)


def test_backend_lines_are_tagged_not_wrapped():
    formatter = MainFormatter()
    line = formatter.format(make_record("proc.backend", "listening on 18789"))
    assert line.endswith(" - [backend] listening on 18789")
    assert "INFO" not in line


def test_supervisor_lines_use_full_format():
    formatter = MainFormatter()
    line = formatter.format(make_record("gatewrap.local.lifecycle", "state change", logging.WARNING))
    assert "WARNING " in line
    assert "[gatewrap.local.lifecycle] - state change" in line


def test_setup_replaces_handlers():
    root = logging.getLogger()
    saved, saved_level = list(root.handlers), root.level
    try:
        setup_logging(logging.WARNING)
        setup_logging(logging.DEBUG)
        handlers = [h for h in root.handlers if isinstance(h.formatter, MainFormatter)]
        assert len(handlers) == 1
        assert handlers[0].level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved:
            root.addHandler(handler)
        root.setLevel(saved_level)


class FakeResponse:
    status_code = 204
    text = ""


@pytest.fixture
def loki(monkeypatch):
    pushes = []

    def fake_post(url, json=None, headers=None, timeout=None):
        pushes.append((url, json, headers))
        return FakeResponse()

    monkeypatch.setattr(requests, "post", fake_post)
    handler = LokiHandler("http://loki.test:3100/", org_id="tenant-1", flush_interval=3600)
    handler.setFormatter(MainFormatter())
    handler.pushes = pushes
    yield handler
    handler.close()


def test_loki_entries_are_labelled_by_source(loki):
    backend = loki.build_entry(make_record("proc.backend", "raw backend line"))
    supervisor = loki.build_entry(make_record("gatewrap.main", "hello", logging.ERROR))

    assert backend["stream"]["source"] == "backend"
    assert backend["stream"]["logger"] == "backend"
    assert backend["values"][0][1] == "raw backend line"
    assert supervisor["stream"]["source"] == "supervisor"
    assert supervisor["stream"]["level"] == "error"
    assert supervisor["values"][0][1].endswith("hello")


def test_loki_flush_pushes_buffered_batch(loki):
    loki.emit(make_record("proc.backend", "one"))
    loki.emit(make_record("proc.backend", "two"))
    loki.flush()

    assert len(loki.pushes) == 1
    url, payload, headers = loki.pushes[0]
    assert url == "http://loki.test:3100/loki/api/v1/push"
    assert headers["X-Scope-OrgID"] == "tenant-1"
    assert len(payload["streams"]) == 1
    assert [value[1] for value in payload["streams"][0]["values"]] == ["one", "two"]

    loki.flush()
    assert len(loki.pushes) == 1


def test_loki_flushes_when_batch_is_full(loki):
    loki.batch_size = 3
    for i in range(3):
        loki.emit(make_record("proc.backend", f"line {i}"))
    assert len(loki.pushes) == 1
    assert len(loki.pushes[0][1]["streams"][0]["values"]) == 3


def test_streams_are_grouped_by_labels(loki):
    entries = [
        loki.build_entry(make_record("proc.backend", "a")),
        loki.build_entry(make_record("gatewrap.main", "b")),
        loki.build_entry(make_record("proc.backend", "c")),
    ]
    streams = LokiHandler.group_streams(entries)

    assert [s["stream"]["source"] for s in streams] == ["backend", "supervisor"]
    assert [v[1] for v in streams[0]["values"]] == ["a", "c"]
