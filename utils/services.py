"""
utils/services.py
-----------------
Wires every long-lived object once per process and owns their lifecycle.

    settings ─┬─ httpx.AsyncClient ── ClientCredentialsAuth ─┐
              ├─ RateLimiter (ticketing) ────────────────────┴─ TicketingClient ─┬─ EventsPoller
              ├─ ollama.AsyncClient ── RateLimiter (llm) ── RegMileageLlm ───────┤
              │                                                   RegMileageExtractor
              │                                                   CertificateDataBuilder
              ├─ supabase Client ── CertificateStorage ──────────────────────────┤
              └─ Database ── ProcessedTicketsRepository ─────────────────────────┴─ TicketProcessor

``run_poll_cycle`` is the poll-then-process loop shared by ``POST /poll`` and
the ``poll_and_process`` script.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import ollama
from supabase import create_client

from utils.auth import ClientCredentialsAuth
from utils.certificate_data import CertificateDataBuilder
from utils.certificate_pdf import render_certificate_pdf
from utils.certificate_storage import CertificateStorage
from utils.database import Database
from utils.events_poller import EventsPoller
from utils.llm_client import RegMileageLlm
from utils.processed_tickets import ProcessedTicketsRepository
from utils.rate_limiter import (
    LLM_MAX_REQUESTS,
    LLM_MAX_TOKENS,
    LLM_WINDOW_S,
    TICKETING_MAX_REQUESTS,
    TICKETING_WINDOW_S,
    RateLimiter,
)
from utils.reg_mileage import RegMileageExtractor
from utils.settings import Settings
from utils.ticket_processor import ProcessingOutcome, TicketProcessor
from utils.ticketing_client import TicketingClient

log = logging.getLogger("utils.services")


class Services:
    def __init__(
        self,
        settings: Optional[Settings],
        poller: EventsPoller,
        processor: TicketProcessor,
        database: Optional[Database] = None,
        limiters: Optional[List[RateLimiter]] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.poller = poller
        self.processor = processor
        self._database = database
        self._limiters = limiters or []
        self._http = http

    async def startup(self) -> None:
        if self._database is not None:
            await self._database.open()
        log.info("services_started", extra={"kv": self.settings.public_view() if self.settings else {}})

    async def aclose(self) -> None:
        for limiter in self._limiters:
            await limiter.aclose()
        if self._http is not None:
            await self._http.aclose()
        if self._database is not None:
            await self._database.close()
        log.info("services_closed")


def build_services(settings: Settings) -> Services:
    http = httpx.AsyncClient()
    ticketing_limiter = RateLimiter(TICKETING_MAX_REQUESTS, TICKETING_WINDOW_S, name="ticketing")
    llm_limiter = RateLimiter(LLM_MAX_REQUESTS, LLM_WINDOW_S, max_tokens=LLM_MAX_TOKENS, name="llm")

    auth = ClientCredentialsAuth(
        http,
        settings.ticketing_token_url,
        settings.ticketing_client_id,
        settings.ticketing_client_secret.get_secret_value(),
    )
    client = TicketingClient(http, settings.ticketing_api_base_url, auth, ticketing_limiter)

    llm = RegMileageLlm(ollama.AsyncClient(host=settings.ollama_host), settings.extraction_model, llm_limiter)
    extractor = RegMileageExtractor(client, llm)
    builder = CertificateDataBuilder(client, extractor)

    storage = CertificateStorage(
        create_client(settings.supabase_url, settings.supabase_service_key.get_secret_value()),
        settings.certificates_bucket,
    )
    database = Database(settings.database_url.get_secret_value(), max_size=settings.db_pool_max)
    repository = ProcessedTicketsRepository(database)

    processor = TicketProcessor(client, builder, render_certificate_pdf, storage, repository)
    return Services(
        settings,
        poller=EventsPoller(client),
        processor=processor,
        database=database,
        limiters=[ticketing_limiter, llm_limiter],
        http=http,
    )


# ---------------------------------------------------------------------------
# Poll cycle
# ---------------------------------------------------------------------------
@dataclass
class PollSummary:
    started_at: datetime
    found: int = 0
    processed: int = 0
    already_processed: int = 0
    needs_review: int = 0
    failed: int = 0
    not_started: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0

    @property
    def next_checkpoint(self) -> str:
        return self.started_at.isoformat()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "processed": self.processed,
            "already_processed": self.already_processed,
            "needs_review": self.needs_review,
            "failed": self.failed,
            "not_started": self.not_started,
            "failures": self.failures,
            "next_checkpoint": self.next_checkpoint,
            "elapsed_ms": self.elapsed_ms,
        }


async def run_poll_cycle(
    poller: EventsPoller,
    processor: TicketProcessor,
    since: Optional[datetime] = None,
    limit: int = 100,
    concurrency: int = 1,
    stop: Optional[asyncio.Event] = None,
) -> PollSummary:
    """Poll closed tickets and process each one; a ticket's failure never stops the others."""
    summary = PollSummary(started_at=datetime.now(timezone.utc))
    t0 = time.perf_counter()

    ticket_ids = await poller.poll_closed_tickets(since=since, unprocessed_only=True, limit=limit)
    summary.found = len(ticket_ids)
    sem = asyncio.Semaphore(max(1, concurrency))

    async def one(ticket_id: str) -> None:
        async with sem:
            if stop is not None and stop.is_set():
                summary.not_started += 1
                return
            try:
                outcome = await processor.process_closed_ticket(ticket_id)
            except Exception as e:
                summary.failed += 1
                summary.failures[ticket_id] = str(e)
                log.exception("poll_ticket_failed", extra={"kv": {"ticket_id": ticket_id, "error": str(e)}})
                return
        if outcome is ProcessingOutcome.PROCESSED:
            summary.processed += 1
        elif outcome is ProcessingOutcome.ALREADY_PROCESSED:
            summary.already_processed += 1
        else:
            summary.needs_review += 1

    await asyncio.gather(*(one(tid) for tid in ticket_ids))

    summary.elapsed_ms = int((time.perf_counter() - t0) * 1000)
    log.info("poll_cycle_complete", extra={"kv": {
        k: v for k, v in summary.as_dict().items() if k != "failures"
    }})
    return summary
