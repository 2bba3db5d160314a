"""
Shared logging for the whole service (Certificate Ingest).

Features
- Context vars: service, request_id, ticket_id on every record
- Styles:
    LOG_STYLE=json   -> newline-delimited JSON (default; best for log ingestion)
    LOG_STYLE=human  -> compact human-readable lines
    LOG_STYLE=both   -> emit both handlers
- Tuning:
    LOG_LEVEL=INFO|DEBUG|...
    SERVICE_NAME=certificate-ingest (default)
- Helpers:
    human_kv(dict) to format short key=val lists (with safe truncation)
    sha256_8(text) short digest so conversation text never lands in logs
"""

from __future__ import annotations

import os
import hashlib
import logging
import contextvars
from typing import Any, Mapping, Iterable

from pythonjsonlogger import jsonlogger

# ----------------------------
# Context (settable from any module)
# ----------------------------
request_id_var = contextvars.ContextVar("request_id", default=None)
ticket_id_var  = contextvars.ContextVar("ticket_id", default=None)

def set_ticket_id(tid: str | None) -> None:
    ticket_id_var.set(tid)

def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)

# ----------------------------
# Pretty key/value helper
# ----------------------------
def _short(s: Any, limit: int = 140) -> str:
    """Safely stringify & truncate for single-line logs."""
    if s is None:
        return "-"
    t = str(s)
    t = t.replace("\n", " ").replace("\r", " ").strip()
    return t if len(t) <= limit else (t[:limit] + "…")

def human_kv(items: Mapping[str, Any] | Iterable[tuple[str, Any]], sep: str = " ") -> str:
    """Render mapping/iterable as 'k=v' tokens with truncation."""
    pairs = items.items() if isinstance(items, Mapping) else items
    return sep.join(f"{k}={_short(v)}" for k, v in pairs)

def sha256_8(s: str | None) -> str:
    """Short SHA256 digest for correlating text without logging it."""
    return hashlib.sha256((s or "").encode("utf-8")).hexdigest()[:8]

# ----------------------------
# Filters & Formatters
# ----------------------------
class _CtxFilter(logging.Filter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.service    = self.service
        record.request_id = request_id_var.get()
        if getattr(record, "ticket_id", None) is None:
            record.ticket_id = ticket_id_var.get()
        return True

class _HumanFormatter(logging.Formatter):
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        # 2026-03-02 10:36:28.047 INFO certificate-ingest utils.ticket_processor:
        prefix = f"{self.formatTime(record)} {record.levelname} {getattr(record, 'service', '-')}" \
                 f" {record.name}:"
        msg = str(record.getMessage())

        extras = []
        for key in ("request_id", "ticket_id"):
            val = getattr(record, key, None)
            if val:
                extras.append((key, val))
        # Modules pass their key/values under extra={"kv": {...}}
        kv = getattr(record, "kv", None)
        if isinstance(kv, Mapping) and kv:
            extras.extend(kv.items())

        line = f"{prefix} {msg}"
        if extras:
            line += " | " + human_kv(extras)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

# ----------------------------
# Init
# ----------------------------
def init_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    service = os.getenv("SERVICE_NAME", "certificate-ingest")
    style = os.getenv("LOG_STYLE", "json").lower()  # json | human | both

    root = logging.getLogger()
    # Avoid duplicate handlers on reloads
    if getattr(root, "_initialized_by_app", False):
        return

    root.handlers.clear()
    root.setLevel(level)

    ctx_filter = _CtxFilter(service)

    if style in ("human", "both"):
        h = logging.StreamHandler()
        h.setFormatter(_HumanFormatter())
        h.addFilter(ctx_filter)
        root.addHandler(h)

    if style in ("json", "both") or not root.handlers:
        j = logging.StreamHandler()
        fmt = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(service)s %(name)s %(message)s %(request_id)s %(ticket_id)s"
        )
        j.setFormatter(fmt)
        j.addFilter(ctx_filter)
        root.addHandler(j)

    # uvicorn ships its own handlers; route them through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.setLevel(level)
        lg.propagate = True

    # httpx logs every request line at INFO, including query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)

    root._initialized_by_app = True  # type: ignore[attr-defined]
