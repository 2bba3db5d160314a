"""
Certificate Ingest API
======================

This FastAPI application turns closed workshop tickets into calibration
certificates.  It exposes the following endpoints:

* ``GET /`` – Liveness check returning a simple confirmation string.
* ``GET /health`` – Returns non-secret configuration and tuning values.
* ``POST /process-ticket`` – Process one ticket by id.  Body:
  ``{"ticketId": "<uuid>"}``.  Idempotent: a ticket that already has a
  successful certificate is reported as ``already_processed`` and not
  touched again.
* ``POST /poll`` – Run one poll-and-process cycle over recently closed
  tickets and return the counts.

All long-lived clients (HTTP, LLM, storage, connection pool, rate
limiters) are built once in the lifespan handler and closed on shutdown.
Shutdown stops accepting requests (503) and waits for in-flight ones.

Logging is structured.  The root logger is configured via
``logging_setup.init_logging`` to emit JSON and/or human readable lines.
Each request is assigned a request ID which flows through to every log
line emitted while handling it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from logging_setup import init_logging, set_request_id
from utils.database import SLOW_DB_MS
from utils.llm_client import SLOW_LLM_MS
from utils.rate_limiter import LLM_MAX_REQUESTS, LLM_MAX_TOKENS, TICKETING_MAX_REQUESTS
from utils.services import Services, build_services, run_poll_cycle
from utils.settings import _get_float, load_settings
from utils.ticketing_client import SLOW_TICKETING_MS

init_logging()
log = logging.getLogger("main")

# ---------------------------------------------------------------------------
# Tuning knobs
# ---------------------------------------------------------------------------
SHUTDOWN_GRACE_S = _get_float("SHUTDOWN_GRACE_S", 30.0)


def _default_services() -> Services:
    return build_services(load_settings())


class _RequestTracker:
    """Counts in-flight requests so shutdown can drain them."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.shutting_down = False
        self._idle = asyncio.Event()
        self._idle.set()

    def enter(self) -> None:
        self.in_flight += 1
        self._idle.clear()

    def leave(self) -> None:
        self.in_flight -= 1
        if self.in_flight == 0:
            self._idle.set()

    async def drain(self, timeout_s: float) -> bool:
        self.shutting_down = True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False


def _bad_request(error: str, message: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if message:
        body["message"] = message
    return JSONResponse(status_code=400, content=body)


def _parse_ticket_id(body: Any) -> str | JSONResponse:
    if not isinstance(body, dict):
        log.warning("process_ticket_bad_body", extra={"kv": {"body_type": type(body).__name__}})
        return _bad_request("BAD_REQUEST", "Invalid JSON body")
    if "ticketId" not in body:
        log.warning("process_ticket_missing_id")
        return _bad_request("MISSING_TICKET_ID", "ticketId is required")
    raw = body["ticketId"]
    if not isinstance(raw, str) or not raw.strip():
        return _bad_request("INVALID_TICKET_ID", "ticketId must be a non-empty string")
    try:
        return str(uuid.UUID(raw.strip()))
    except ValueError:
        log.warning("process_ticket_invalid_id", extra={"kv": {"length": len(raw)}})
        return _bad_request("INVALID_TICKET_ID", "ticketId must be a UUID")


def create_app(services_factory: Callable[[], Services] = _default_services) -> FastAPI:
    tracker = _RequestTracker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = services_factory()
        await services.startup()
        app.state.services = services
        log.info("app_started")
        try:
            yield
        finally:
            drained = await tracker.drain(SHUTDOWN_GRACE_S)
            if not drained:
                log.warning("shutdown_grace_expired", extra={"kv": {"in_flight": tracker.in_flight}})
            await services.aclose()
            log.info("app_stopped")

    app = FastAPI(title="Certificate Ingest API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        if tracker.shutting_down:
            return JSONResponse(status_code=503, content={"error": "SHUTTING_DOWN"})
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        set_request_id(rid)
        tracker.enter()
        try:
            response = await call_next(request)
        finally:
            tracker.leave()
            set_request_id(None)
        response.headers["X-Request-ID"] = rid
        return response

    # -----------------------------------------------------------------------
    # Root and health endpoints
    # -----------------------------------------------------------------------
    @app.get("/")
    def root() -> Dict[str, str]:
        """Basic liveness check."""
        return {"message": "Certificate Ingest API is running"}

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        """Configuration and tuning values, never secrets."""
        settings = request.app.state.services.settings
        return {
            "ok": True,
            "config": settings.public_view() if settings else {},
            "rate_limits": {
                "ticketing_requests_per_window": TICKETING_MAX_REQUESTS,
                "llm_requests_per_window": LLM_MAX_REQUESTS,
                "llm_tokens_per_window": LLM_MAX_TOKENS,
            },
            "slow_ms": {"ticketing": SLOW_TICKETING_MS, "llm": SLOW_LLM_MS, "db": SLOW_DB_MS},
            "in_flight": tracker.in_flight,
        }

    # -----------------------------------------------------------------------
    # Single ticket
    # -----------------------------------------------------------------------
    @app.post("/process-ticket")
    async def process_ticket(request: Request) -> JSONResponse:
        """Process one closed ticket and report its terminal outcome.

        200 ``processed`` / ``already_processed`` / ``needs_review``;
        400 for a malformed body or ticket id;
        500 when processing raised (a ``failed`` row may have been recorded).
        """
        try:
            body = await request.json()
        except ValueError:
            return _bad_request("BAD_REQUEST", "Invalid JSON body")
        parsed = _parse_ticket_id(body)
        if isinstance(parsed, JSONResponse):
            return parsed
        ticket_id = parsed

        services: Services = request.app.state.services
        t0 = time.perf_counter()
        try:
            outcome = await services.processor.process_closed_ticket(ticket_id)
        except Exception as e:
            log.exception("process_ticket_failed", extra={"kv": {
                "ticket_id": ticket_id, "error_type": type(e).__name__,
            }})
            return JSONResponse(status_code=500, content={
                "status": "failed",
                "ticketId": ticket_id,
                "error": "INTERNAL_ERROR",
                "message": "Ticket processing failed",
            })

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        log.info("process_ticket_complete", extra={"kv": {
            "ticket_id": ticket_id, "status": outcome.value, "elapsed_ms": elapsed_ms,
        }})
        return JSONResponse(status_code=200, content={"status": outcome.value, "ticketId": ticket_id})

    # -----------------------------------------------------------------------
    # Poll cycle
    # -----------------------------------------------------------------------
    @app.post("/poll")
    async def poll(request: Request, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Poll recently closed tickets (default last 24h) and process them."""
        services: Services = request.app.state.services
        settings = services.settings
        summary = await run_poll_cycle(
            services.poller,
            services.processor,
            since=since,
            limit=settings.poll_limit if settings else 100,
            concurrency=settings.process_concurrency if settings else 1,
        )
        return {"ok": summary.failed == 0, **summary.as_dict()}

    return app


app = create_app()
