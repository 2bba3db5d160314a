"""
utils/ticket_processor.py
-------------------------
Turns one closed ticket into exactly one terminal outcome.

    already success row?  -> ALREADY_PROCESSED (no side effects)
    ticket 404            -> needs_review row, NEEDS_REVIEW
    CertificateDataError  -> needs_review row, NEEDS_REVIEW
    render / upload error -> failed row, exception re-raised
    otherwise             -> success row,  PROCESSED

Runs for the same ticket id are serialised per process, so a second
concurrent run sees the first one's success row.  Across processes the
partial unique index on success rows keeps the table to one success.

Every transition inserts one new row; nothing is updated.  Errors outside
those cases (auth, 5xx after retries, database) propagate without a row.
There are no retries here; they live in the clients.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict

from logging_setup import set_ticket_id
from utils.api_errors import NotFoundError
from utils.certificate_data import CertificateData, CertificateDataBuilder, CertificateDataError
from utils.certificate_storage import CertificateStorage
from utils.models import TicketReference
from utils.processed_tickets import ProcessedTicketStatus, ProcessedTicketsRepository
from utils.ticketing_client import TicketingClient

log = logging.getLogger("utils.ticket_processor")

UNKNOWN_CUSTOMER = "unknown"


class ProcessingOutcome(str, enum.Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    NEEDS_REVIEW = "needs_review"


@dataclass
class _Guard:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TicketProcessor:
    def __init__(
        self,
        client: TicketingClient,
        builder: CertificateDataBuilder,
        render_pdf: Callable[[CertificateData], bytes],
        storage: CertificateStorage,
        repository: ProcessedTicketsRepository,
    ) -> None:
        self._client = client
        self._builder = builder
        self._render_pdf = render_pdf
        self._storage = storage
        self._repository = repository
        self._guards: Dict[str, _Guard] = {}

    async def process_closed_ticket(self, ticket_id: str) -> ProcessingOutcome:
        set_ticket_id(ticket_id)
        try:
            async with self._ticket_guard(ticket_id):
                return await self._process(ticket_id)
        finally:
            set_ticket_id(None)

    @asynccontextmanager
    async def _ticket_guard(self, ticket_id: str) -> AsyncIterator[None]:
        """Serialise work on one ticket id within this process."""
        entry = self._guards.get(ticket_id)
        if entry is None:
            entry = self._guards[ticket_id] = _Guard()
        entry.users += 1
        if entry.lock.locked():
            log.info("ticket_waiting_for_in_flight_run", extra={"kv": {"ticket_id": ticket_id}})
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._guards[ticket_id]

    async def _process(self, ticket_id: str) -> ProcessingOutcome:
        log.info("ticket_processing_started", extra={"kv": {"ticket_id": ticket_id}})

        if await self._repository.has_successful_record(ticket_id):
            log.info("ticket_already_processed", extra={"kv": {"ticket_id": ticket_id}})
            return ProcessingOutcome.ALREADY_PROCESSED

        try:
            ticket = await self._client.get_ticket(ticket_id)
        except NotFoundError:
            log.warning("ticket_not_found", extra={"kv": {"ticket_id": ticket_id, "code": "TICKET_NOT_FOUND"}})
            await self._repository.record_failure(
                ticket_id=ticket_id,
                ticket_number=0,
                customer_id=UNKNOWN_CUSTOMER,
                error_message=f"Ticket not found: {ticket_id}",
                status=ProcessedTicketStatus.NEEDS_REVIEW,
            )
            return ProcessingOutcome.NEEDS_REVIEW

        ref = TicketReference.from_ticket(ticket)
        log.info("ticket_fetched", extra={"kv": {
            "ticket_id": ref.id,
            "ticket_number": ref.ticket_number,
            "state": ref.state,
            "finished_at": ref.finished_at.isoformat() if ref.finished_at else None,
            "has_channel": ref.channel_id is not None,
        }})
        customer_id = ref.customer_id or UNKNOWN_CUSTOMER

        try:
            data = await self._builder.build_for_ticket(ticket_id, ticket=ticket)
        except CertificateDataError as e:
            log.warning("certificate_data_needs_review", extra={"kv": {
                "ticket_id": ticket_id,
                "ticket_number": ref.ticket_number,
                "code": e.code.value,
                "error": str(e),
            }})
            await self._repository.record_failure(
                ticket_id=ticket_id,
                ticket_number=ref.ticket_number,
                customer_id=customer_id,
                error_message=f"[{e.code.value}] {e}",
                status=ProcessedTicketStatus.NEEDS_REVIEW,
                raw_payload={"errorCode": e.code.value, "errorMessage": str(e)},
            )
            return ProcessingOutcome.NEEDS_REVIEW

        try:
            pdf = await asyncio.to_thread(self._render_pdf, data)
            certificate_url = await self._storage.save_certificate_pdf(ticket_id, data.job_number, pdf)
        except Exception as e:
            error_type = type(e).__name__
            log.error("certificate_render_or_store_failed", extra={"kv": {
                "ticket_id": ticket_id,
                "ticket_number": data.job_number,
                "error_type": error_type,
                "error": str(e),
            }})
            await self._repository.record_failure(
                ticket_id=ticket_id,
                ticket_number=data.job_number,
                customer_id=customer_id,
                error_message=f"PDF/Storage error: {e}",
                status=ProcessedTicketStatus.FAILED,
                raw_payload={
                    "errorType": error_type,
                    "errorMessage": str(e),
                    "step": "pdf_generation_or_storage",
                },
            )
            raise

        await self._repository.record_success(
            ticket_id=ticket_id,
            ticket_number=data.job_number,
            customer_id=customer_id,
            certificate_url=certificate_url,
            raw_payload={
                "workshopName": data.workshop_name,
                "vehicleMake": data.vehicle_make,
                "vehicleModel": data.vehicle_model,
                "jobNumber": data.job_number,
                "date": data.date,
            },
        )
        log.info("ticket_processed", extra={"kv": {
            "ticket_id": ticket_id,
            "ticket_number": data.job_number,
            "certificate_url": certificate_url,
        }})
        return ProcessingOutcome.PROCESSED
