# sdeit/tests/test_logging.py
import io
import json
import logging

import pytest

from sdeit import logging as slog


@pytest.fixture(autouse=True)
def _clean_context():
    slog.reset()
    yield
    slog.reset()


def _record(msg="hello", level=logging.INFO, exc_info=None, **extra):
    rec = logging.LogRecord("sdeit.test", level, __file__, 1, msg, None, exc_info)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_envelope_fields():
    out = json.loads(slog.JSONFormatter().format(_record()))
    for key in ("schema", "service", "version", "env", "ts", "lvl", "logger", "msg"):
        assert key in out
    assert out["msg"] == "hello"
    assert out["lvl"] == "INFO"
    assert out["ts"].endswith("Z")


def test_extra_goes_to_meta_without_identifiers():
    rec = _record(removed=3, peer_id="00000000-0000-0000-0000-000000000001", risk_updates={"x": 1})
    out = json.loads(slog.JSONFormatter().format(rec))
    assert out["meta"] == {"removed": 3}


def test_non_finite_meta_is_dropped():
    out = json.loads(slog.JSONFormatter().format(_record(risk=float("nan"), count=1)))
    assert out["meta"] == {"count": 1}


def test_bound_context_is_included():
    slog.bind(task="fetch", key_id="abcd", skip=None)
    out = json.loads(slog.JSONFormatter().format(_record()))
    assert out["task"] == "fetch"
    assert out["key_id"] == "abcd"
    assert "skip" not in out

    slog.unbind("task")
    assert slog.context() == {"key_id": "abcd"}


def test_exception_info():
    try:
        raise ValueError("boom")
    except ValueError:
        import sys

        rec = _record(level=logging.ERROR, exc_info=sys.exc_info())
    out = json.loads(slog.JSONFormatter().format(rec))
    assert out["exc_type"] == "ValueError"
    assert out["exc_message"] == "boom"
    assert "Traceback" in out["stack"]

    out = json.loads(slog.JSONFormatter(include_stack=False).format(rec))
    assert "stack" not in out


def test_security_event(caplog):
    logger = logging.getLogger("sdeit.test.security")
    with caplog.at_level(logging.WARNING, logger="sdeit.test.security"):
        slog.log_security_event(
            logger,
            threat_label="delta_rejected",
            reason="signature_mismatch",
            key_id="k1",
            message="batch rejected",
            extra={"index": 2, "signature": "deadbeef"},
        )
    rec = caplog.records[-1]
    assert rec.getMessage() == "batch rejected"
    assert rec.threat_label == "delta_rejected"
    assert rec.reason == "signature_mismatch"
    assert rec.index == 2
    assert not hasattr(rec, "signature")


def test_configure_json_logging_writes_json():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    stream = io.StringIO()
    try:
        slog.configure_json_logging("DEBUG", stream=stream)
        logging.getLogger("sdeit.test.configured").info("configured", extra={"removed": 1})
        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["msg"] == "configured"
        assert line["meta"]["removed"] == 1
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)


def test_get_logger_configures_root_once(monkeypatch):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setattr(slog, "_configured", False)
    monkeypatch.setenv("SDEIT_LOG_LEVEL", "WARNING")
    try:
        log = slog.get_logger("sdeit.test.named")
        assert log.name == "sdeit.test.named"
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, slog.JSONFormatter)
        handlers = list(root.handlers)
        slog.get_logger()
        assert root.handlers == handlers
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
