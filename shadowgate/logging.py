# FILE: shadowgate/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Callable, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("SHADOWGATE_LOG_SCHEMA", "shadowgate.log.v1")
_LOG_SERVICE = os.environ.get("SHADOWGATE_SERVICE", "shadowgate")
_LOG_ENV = os.environ.get("SHADOWGATE_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "SHADOWGATE_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(512, int(os.environ.get("SHADOWGATE_LOG_MAX_FIELD", "4096")))
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("SHADOWGATE_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive, for headers / obvious secrets)
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-admin-token",
    "x-auth-token",
    "x-access-token",
    "access_token",
    "secret_path",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("SHADOWGATE_LOG_REDACT", "").split(",")
    if k.strip()
} | _DEFAULT_REDACT

# Envelope fields lifted from the bound context or the record itself
_ENVELOPE_KEYS = (
    "req_id",
    "path",
    "method",
    "status",
    "latency_ms",
    "decision",
    "origin_masked",
    "risk_level",
    "threat_label",
    "credential_fp",
    "generation",
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
    "shadowgate_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
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
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(str(k)):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, env, instance
      - ts, lvl, logger, msg
      - req_id, path, method, status, latency_ms
      - decision, origin_masked, risk_level, threat_label
      - credential_fp, generation

    Everything else passed through `extra=` lands in "meta", with secret
    keys redacted and long strings truncated.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        for key in _ENVELOPE_KEYS:
            v = getattr(record, key, None)
            if v is None:
                v = ctx.get(key)
            if v is not None:
                evt[key] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta: Dict[str, Any] = {}
        for k, v in record.__dict__.items():
            if k in _LOG_RECORD_STD_ATTRS or k in evt or k.startswith("_"):
                continue
            meta[k] = "***" if _redact_key(k) else _truncate(v)
        if meta:
            evt["meta"] = scrub_dict(meta)

        return _compact_json(evt)


# ---------- Root/uvicorn integration ----------
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


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """
    Get or create a request id and bind it into context immediately.

    Header values are only used as opaque IDs, capped in length so a caller
    cannot inflate log lines through them.
    """
    rid = None
    if headers:
        for k in ("x-request-id", "x-amzn-trace-id"):
            if k in headers:
                rid = headers[k][:64]
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_security_event(
    logger: logging.Logger,
    *,
    threat_label: str,
    decision: Optional[str] = None,
    risk_level: Optional[str] = None,
    origin_masked: Optional[str] = None,
    path: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Unified security event logger for gate decisions.

    All fields are small tags; credentials and request bodies are never
    passed here.
    """
    extra_dict: Dict[str, Any] = {
        "threat_label": threat_label,
        "decision": decision,
        "risk_level": risk_level,
        "origin_masked": origin_masked,
        "path": _truncate(path) if path else None,
    }
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            key = str(k)
            extra_dict[key] = "***" if _redact_key(key) else _truncate(v)
    logger.log(level, message, extra={k: v for k, v in extra_dict.items() if v is not None})


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    Lightweight ASGI middleware that emits one JSON line per finished request
    with req_id, method, path, status and latency_ms.

    It never logs bodies, and adds no response headers, so it cannot make a
    masked response differ from a genuine not-found. `path_filter` rewrites
    the path before it is bound, e.g. to fingerprint a secret segment.
    Usage:
        app.add_middleware(RequestLogMiddleware, path_filter=gate.mask_path)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "shadowgate.http",
        path_filter: Optional[Callable[[str], str]] = None,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.path_filter = path_filter

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        if self.path_filter is not None:
            path = self.path_filter(path)
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind(path=path, method=method)

        t0 = time.perf_counter()
        status_holder = {"code": None}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                },
            )
            # Clear request-scoped keys to avoid leakage across coroutines
            unbind("req_id", "path", "method", "status", "decision")


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "ensure_request_id",
    "log_security_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
