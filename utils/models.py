"""
utils/models.py
---------------
Pydantic models for the ticketing API resources this service reads.

Only the fields we use are declared; everything else in the upstream
payloads is ignored.  Timestamps are parsed to timezone-aware UTC datetimes
(naive values are assumed to be UTC).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Ticket(BaseModel):
    id: str
    ticket_number: int
    state: Optional[str] = None
    customer_id: Optional[str] = None
    customer_channel_id: Optional[str] = None
    operator_id: Optional[str] = None
    vehicle_model_id: Optional[int] = None
    vin: Optional[str] = None
    finished_at: Optional[UtcDatetime] = None
    externally_processed: bool = False
    created_at: Optional[UtcDatetime] = None


class TicketReference(BaseModel):
    """Read-only projection of an upstream ticket."""
    model_config = ConfigDict(frozen=True)

    id: str
    ticket_number: int
    state: Optional[str] = None
    finished_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    channel_id: Optional[str] = None

    @classmethod
    def from_ticket(cls, t: Ticket) -> "TicketReference":
        return cls(
            id=t.id,
            ticket_number=t.ticket_number,
            state=t.state,
            finished_at=t.finished_at,
            customer_id=t.customer_id,
            channel_id=t.customer_channel_id,
        )


class Customer(BaseModel):
    id: str
    company_name: Optional[str] = None
    name: Optional[str] = None
    primary_location_id: Optional[str] = None
    enabled: Optional[bool] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.company_name or self.name


class CustomerLocation(BaseModel):
    id: str
    street_name: Optional[str] = None
    number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    def format_address(self) -> str:
        """``street number, postal city[, country]`` with empty parts dropped."""
        line1 = " ".join(p for p in (self.street_name, self.number) if p)
        line2 = " ".join(p for p in (self.postal_code, self.city) if p)
        parts = [p for p in (line1, line2, self.country) if p]
        return ", ".join(parts)


class Employee(BaseModel):
    id: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.given_name, self.family_name) if p).strip()


class VehicleMake(BaseModel):
    id: int
    name: str


class VehicleModel(BaseModel):
    id: int
    make_id: int
    name: str


class ChannelMessage(BaseModel):
    type: Optional[str] = None
    content: Optional[str] = None
    redacted: bool = False
    created_at: Optional[UtcDatetime] = None


class ChannelPage(BaseModel):
    result: List[ChannelMessage] = Field(default_factory=list)
    next_token: Optional[str] = None


class SystemEvent(BaseModel):
    id: Optional[str] = None
    type: Optional[str] = None
    occurred_at: Optional[UtcDatetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ticket_payload(self) -> Dict[str, Any]:
        t = self.payload.get("ticket")
        return t if isinstance(t, dict) else {}

    @property
    def ticket_id(self) -> Optional[str]:
        tid = self.ticket_payload.get("id") or self.payload.get("ticket_id")
        return str(tid) if tid else None

    @property
    def externally_processed(self) -> bool:
        return bool(self.ticket_payload.get("externally_processed"))


class EventsPage(BaseModel):
    result: List[SystemEvent] = Field(default_factory=list)
    after_id: Optional[str] = None
