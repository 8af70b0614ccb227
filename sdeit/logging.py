# FILE: sdeit/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("SDEIT_LOG_SCHEMA", "sdeit.log.v1")
_LOG_SERVICE = os.environ.get("SDEIT_SERVICE", "sdeit")
_LOG_VERSION = os.environ.get("SDEIT_BUILD_VERSION", os.environ.get("SDEIT_VERSION", "0.0.0"))
_LOG_ENV = os.environ.get("SDEIT_ENV", os.environ.get("ENV", "dev"))

# Max characters per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(256, int(os.environ.get("SDEIT_LOG_MAX_FIELD", "4096")))
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("SDEIT_LOG_INCLUDE_STACK", "1") == "1"

# Keys that would carry raw contact history; never emitted.
_FORBIDDEN_META_KEYS = {
    "peer_id",
    "peer_ids",
    "contacts",
    "ledger",
    "risk_updates",
    "signature",
}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "sdeit_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _finite_or_none(v: Any) -> Any:
    if isinstance(v, float) and (v != v or v in (float("inf"), float("-inf"))):
        return None
    return v


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect dynamic `extra=` attributes from a LogRecord, dropping forbidden
    keys, private attributes and non-finite floats.
    """
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if k.lower() in _FORBIDDEN_META_KEYS:
            continue
        v = _finite_or_none(v)
        if v is None:
            continue
        meta[k] = _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope:

      - schema, service, version, env
      - ts, lvl, logger, msg
      - bound context fields (e.g. key_id, task)
      - exc_type / exc_message / stack when exc_info is set
      - meta: remaining `extra=` fields
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        for k, v in context().items():
            if k.lower() in _FORBIDDEN_META_KEYS:
                continue
            evt.setdefault(k, _truncate(v))

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure the root logger for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    h = logging.StreamHandler(stream=stream or sys.stderr)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)
    return root


def log_security_event(
    logger: logging.Logger,
    *,
    threat_label: str,
    reason: Optional[str] = None,
    key_id: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Log a security-relevant event (e.g. a rejected authority delta).

    Only small tags and counts are logged, never identifiers or payloads.
    """
    extra_dict: Dict[str, Any] = {
        "threat_label": threat_label,
        "reason": reason,
        "key_id": key_id,
    }
    for k, v in (extra or {}).items():
        if v is None or str(k).lower() in _FORBIDDEN_META_KEYS:
            continue
        extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra={k: v for k, v in extra_dict.items() if v is not None})


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "sdeit") -> logging.Logger:
    """
    Return a logger, configuring JSON output on the root logger on first use.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("SDEIT_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "log_security_event",
    "JSONFormatter",
]
