# FILE: shadowsync/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import socket
import sys
import traceback
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("SHADOWSYNC_LOG_SCHEMA", "shadowsync.log.v1")
_LOG_SERVICE = os.environ.get("SHADOWSYNC_SERVICE", "shadowsync")
_LOG_INSTANCE = os.environ.get("SHADOWSYNC_INSTANCE", socket.gethostname() or "unknown")

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(256, int(os.environ.get("SHADOWSYNC_LOG_MAX_FIELD", "4096")))
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("SHADOWSYNC_LOG_INCLUDE_STACK", "1") == "1"

# Keys whose values never reach a log line
_REDACT_KEYS = {
    "authorization",
    "shadow_token",
    "service_tokens",
    "token",
    "api_key",
    "private_key",
}

# Envelope fields picked from bound context or record extras, in this order
_ENVELOPE_FIELDS = (
    "component",
    "relayer",
    "token_id",
    "owner",
    "previous_owner",
    "sequence",
    "mediator_sequence",
    "position",
    "chunk_start",
    "chunk_end",
    "batch_size",
    "pending",
    "outcome",
    "path",
    "tx_ref",
    "latency_ms",
)

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
    "shadowsync_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-task)."""
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


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _finite_float(x: Any) -> Optional[float]:
    try:
        xf = float(x)
    except (TypeError, ValueError):
        return None
    if xf != xf or xf in (float("inf"), float("-inf")):
        return None
    return xf


def _jsonable(v: Any) -> Any:
    if isinstance(v, float):
        return _finite_float(v)
    if isinstance(v, int) and not isinstance(v, bool) and abs(v) >= 2**53:
        # Token ids and sequences can exceed JSON-safe integers
        return str(v)
    if isinstance(v, (str, int, bool)) or v is None:
        return _truncate(v)
    return _truncate(str(v))


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        if str(k).lower() in _REDACT_KEYS:
            out[k] = "<redacted>"
        else:
            out[k] = _jsonable(v)
    return out


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, instance
      - ts, lvl, logger, msg
      - replication fields (token_id, owner, sequence, position, batch_size,
        outcome, ...) taken from the bound context first, then from extra=
    Remaining extras go under "meta" after redaction.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        for name in _ENVELOPE_FIELDS:
            v = ctx.get(name)
            if v is None:
                v = getattr(record, name, None)
            if v is None:
                continue
            v = _jsonable(v)
            if v is not None:
                evt[name] = v

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = _truncate(str(exc_val))
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta: Dict[str, Any] = {}
        for k, v in record.__dict__.items():
            if k in _LOG_RECORD_STD_ATTRS or k in evt or k.startswith("_"):
                continue
            meta[k] = v
        for k, v in ctx.items():
            if k not in evt and k not in meta:
                meta[k] = v
        if meta:
            evt["meta"] = scrub_dict(meta)

        return _compact_json(evt)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


__all__ = [
    "bind",
    "unbind",
    "context",
    "configure_json_logging",
    "JSONFormatter",
    "scrub_dict",
]
