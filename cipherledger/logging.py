# FILE: cipherledger/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional, Set, Tuple

# ---------- Optional OpenTelemetry ----------
try:
    from opentelemetry import trace as _otel_trace  # type: ignore

    _HAS_OTEL = True
except Exception:  # pragma: no cover
    _HAS_OTEL = False

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("CIPHERLEDGER_LOG_SCHEMA", "cipherledger.log.v1")
_LOG_SERVICE = os.environ.get("CIPHERLEDGER_SERVICE", "cipherledger")
_LOG_VERSION = os.environ.get("CIPHERLEDGER_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("CIPHERLEDGER_ENV", os.environ.get("ENV", "dev"))


def _env_int(name: str, default: int, floor: int) -> int:
    try:
        return max(floor, int(os.environ.get(name, str(default))))
    except ValueError:
        return default


_MAX_FIELD = _env_int("CIPHERLEDGER_LOG_MAX_FIELD", 4096, 256)

_INCLUDE_STACK = os.environ.get("CIPHERLEDGER_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive, for headers / obvious secrets)
_REDACT_KEYS = {
    "authorization",
    "cookie",
    "x-api-key",
    "private_key",
    "signer_key",
}

# Extras that must never reach a log line: ciphertexts, proofs and anything
# that could carry a decrypted value.
_FORBIDDEN_META_KEYS = {
    "ciphertext",
    "proof",
    "input_proof",
    "decryption_proof",
    "handle",
    "handles",
    "clear_values",
    "clear_values_encoded",
    "decrypted_value",
    "cleartext",
    "plaintext",
}

# Envelope fields lifted out of the bound context / record extras.
_ENVELOPE_FIELDS = (
    "action",
    "record_id",
    "phase",
    "account",
    "tx_hash",
    "outcome",
    "error_kind",
    "latency_ms",
    "session_id",
)

# Attributes every LogRecord carries; anything else came in via `extra=`.
_LOG_RECORD_STD_ATTRS: Set[str] = set(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "cipherledger_log_ctx", default={}
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


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _otel_ids() -> Tuple[Optional[str], Optional[str]]:
    if not _HAS_OTEL:
        return None, None
    try:
        span = _otel_trace.get_current_span()
        ctx = span.get_span_context()
        if not ctx or not ctx.is_valid:
            return None, None
        return (format(ctx.trace_id, "032x"), format(ctx.span_id, "016x"))
    except Exception:  # pragma: no cover
        return None, None


def _ts_iso() -> str:
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    if isinstance(v, (bytes, bytearray)):
        # raw bytes are never logged, only their size
        return f"<{len(v)} bytes>"
    return v


def _is_forbidden(key: str) -> bool:
    return key.lower() in _FORBIDDEN_META_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub secrets and ciphertext-bearing keys from a dict, recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if k.lower() in _REDACT_KEYS or _is_forbidden(k):
            out[k] = "***"
        elif isinstance(v, dict):
            out[k] = scrub_dict(v)
        else:
            out[k] = _truncate(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect non-standard LogRecord attributes (the `extra=` mapping),
    dropping forbidden keys and truncating values.
    """
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if _is_forbidden(k):
            continue
        meta[k] = scrub_dict(v) if isinstance(v, dict) else _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Envelope fields:
      - schema, service, version, env
      - ts, lvl, logger, msg
      - trace_id, span_id (when OpenTelemetry is active)
      - action, record_id, phase, account, tx_hash, outcome, error_kind,
        latency_ms, session_id (bound context wins over record extras)
    Anything else passed via `extra=` lands in "meta", minus forbidden keys.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        trace_id, span_id = _otel_ids()

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
        if trace_id:
            evt["trace_id"] = trace_id
            evt["span_id"] = span_id

        for name in _ENVELOPE_FIELDS:
            v = ctx.get(name)
            if v is None:
                v = getattr(record, name, None)
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
    logger_name: str = "",
) -> logging.Logger:
    """
    Route `logger_name` (root by default) to a JSON stream handler.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    target = logging.getLogger(logger_name)
    target.setLevel(lvl)
    _clear_handlers(target)
    target.addHandler(h)
    return target


def log_operation(
    logger: logging.Logger,
    *,
    action: str,
    outcome: str,
    record_id: Optional[str] = None,
    latency_ms: Optional[float] = None,
    error_kind: Optional[str] = None,
    message: str = "operation",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log the outcome of one submit / verify / refresh run.

    Only identifiers, tags and timings are logged; extras with forbidden
    keys (ciphertexts, proofs, decrypted values) are dropped.
    """
    extra_dict: Dict[str, Any] = {
        "action": action,
        "outcome": outcome,
        "record_id": record_id,
        "latency_ms": round(float(latency_ms), 3) if latency_ms is not None else None,
        "error_kind": error_kind,
    }
    for k, v in (extra or {}).items():
        if v is None or _is_forbidden(str(k)):
            continue
        extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra={k: v for k, v in extra_dict.items() if v is not None})


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "cipherledger") -> logging.Logger:
    """
    Return a logger; the first call installs the JSON handler on the
    `cipherledger` logger tree.
    """
    global _configured
    if not _configured:
        lvl = os.environ.get("CIPHERLEDGER_LOG_LEVEL", "INFO")
        configure_json_logging(level=lvl, logger_name="cipherledger")
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "log_operation",
    "JSONFormatter",
    "scrub_dict",
]
