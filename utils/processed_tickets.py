"""
utils/processed_tickets.py
--------------------------
Append-only audit table of ticket outcomes (``processed_tickets``).

Rules:
  • every processing attempt that reaches a terminal state inserts one row
  • rows are never updated
  • a ticket counts as done once any ``success`` row exists for it
  • at most one ``success`` row per ticket (partial unique index); a second
    success insert is skipped, so it is safe to retry
  • failure inserts are never retried once sent
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from psycopg.types.json import Jsonb
from pydantic import BaseModel

log = logging.getLogger("utils.processed_tickets")


class ProcessedTicketStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class ProcessedTicketRecord(BaseModel):
    id: int
    ticket_id: str
    ticket_number: int
    customer_id: str
    processed_at: datetime
    certificate_url: Optional[str] = None
    status: ProcessedTicketStatus
    error_message: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None


class QueryExecutor(Protocol):
    async def query(
        self, sql: str, params: Optional[Sequence[Any]] = None, idempotent: bool = True,
    ) -> list: ...


_HAS_SUCCESS_SQL = """
SELECT EXISTS(
    SELECT 1 FROM processed_tickets WHERE ticket_id = %s AND status = 'success'
) AS exists
"""

_INSERT_SQL = """
INSERT INTO processed_tickets
    (ticket_id, ticket_number, customer_id, processed_at, certificate_url, status, error_message, raw_payload)
VALUES (%s, %s, %s, NOW(), %s, %s, %s, %s)
"""

_INSERT_SUCCESS_SQL = _INSERT_SQL + """
ON CONFLICT (ticket_id) WHERE status = 'success' DO NOTHING
RETURNING id
"""

_LATEST_SQL = """
SELECT id, ticket_id::text AS ticket_id, ticket_number, customer_id, processed_at,
       certificate_url, status, error_message, raw_payload
FROM processed_tickets
WHERE ticket_id = %s
ORDER BY processed_at DESC, id DESC
LIMIT 1
"""


def _params(
    ticket_id: str,
    ticket_number: int,
    customer_id: str,
    status: ProcessedTicketStatus,
    certificate_url: Optional[str],
    error_message: Optional[str],
    raw_payload: Optional[Dict[str, Any]],
) -> tuple:
    payload = Jsonb(raw_payload) if raw_payload is not None else None
    return (ticket_id, ticket_number, customer_id, certificate_url, status.value, error_message, payload)


class ProcessedTicketsRepository:
    def __init__(self, db: QueryExecutor) -> None:
        self._db = db

    async def has_successful_record(self, ticket_id: str) -> bool:
        rows = await self._db.query(_HAS_SUCCESS_SQL, (ticket_id,))
        return bool(rows and rows[0].get("exists"))

    async def record_success(
        self,
        ticket_id: str,
        ticket_number: int,
        customer_id: str,
        certificate_url: str,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        rows = await self._db.query(_INSERT_SUCCESS_SQL, _params(
            ticket_id, ticket_number, customer_id, ProcessedTicketStatus.SUCCESS,
            certificate_url, None, raw_payload,
        ))
        if not rows:
            log.warning("processed_ticket_success_exists", extra={"kv": {
                "ticket_id": ticket_id, "ticket_number": ticket_number,
            }})
            return
        log.info("processed_ticket_success_recorded", extra={"kv": {
            "ticket_id": ticket_id, "ticket_number": ticket_number, "row_id": rows[0]["id"],
        }})

    async def record_failure(
        self,
        ticket_id: str,
        ticket_number: int,
        customer_id: str,
        error_message: str,
        status: ProcessedTicketStatus = ProcessedTicketStatus.FAILED,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if status is ProcessedTicketStatus.SUCCESS:
            raise ValueError("record_failure cannot write a success row")
        await self._db.query(_INSERT_SQL, _params(
            ticket_id, ticket_number, customer_id, status, None, error_message, raw_payload,
        ), idempotent=False)
        log.info("processed_ticket_failure_recorded", extra={"kv": {
            "ticket_id": ticket_id, "ticket_number": ticket_number, "status": status.value,
        }})

    async def get_latest(self, ticket_id: str) -> Optional[ProcessedTicketRecord]:
        rows = await self._db.query(_LATEST_SQL, (ticket_id,))
        if not rows:
            return None
        return ProcessedTicketRecord.model_validate(rows[0])

    async def get_latest_status(self, ticket_id: str) -> Optional[ProcessedTicketStatus]:
        record = await self.get_latest(ticket_id)
        return record.status if record else None
