"""
utils/certificate_data.py
-------------------------
Assembles everything the calibration certificate shows for one ticket.

Required upstream data (vehicle model/make, finish timestamp) raises
``CertificateDataError`` with a specific code; the orchestrator turns that
into a ``needs_review`` outcome.  Optional data degrades to placeholders:

  • customer unreadable    → workshop "Unknown workshop"
  • location unreadable    → address  "Address not available"
  • operator unreadable    → name     "Unknown Operator"
  • extraction system error → registration / mileage left empty

Anything else (auth, 5xx after retries, ...) propagates untouched.
"""

# =========================
# Imports & Setup
# =========================
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Optional, Tuple

from cachetools import TTLCache
from pydantic import BaseModel

from utils.api_errors import NotFoundError
from utils.models import Customer, Ticket, VehicleMake, VehicleModel
from utils.reg_mileage import ExtractionResult, ExtractionSystemError, RegMileageExtractor
from utils.settings import _get_int
from utils.ticketing_client import TicketingClient

log = logging.getLogger("utils.certificate_data")

VEHICLE_CACHE_TTL_S: int = _get_int("VEHICLE_CACHE_TTL_S", 6 * 3600)

UNKNOWN_WORKSHOP  = "Unknown workshop"
UNKNOWN_ADDRESS   = "Address not available"
UNKNOWN_OPERATOR  = "Unknown Operator"
CALIBRATION_RESULT = "Calibration Successful"
NO_DTCS = "NO DTCs"


# =========================
# Types
# =========================
class CertificateDataErrorCode(str, enum.Enum):
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    MISSING_CUSTOMER_ID = "MISSING_CUSTOMER_ID"
    MISSING_VEHICLE_MODEL_ID = "MISSING_VEHICLE_MODEL_ID"
    MISSING_PRIMARY_LOCATION = "MISSING_PRIMARY_LOCATION"
    LOCATION_NOT_FOUND = "LOCATION_NOT_FOUND"
    MISSING_FINISHED_AT = "MISSING_FINISHED_AT"
    OPERATOR_NOT_FOUND = "OPERATOR_NOT_FOUND"
    VEHICLE_MODEL_NOT_FOUND = "VEHICLE_MODEL_NOT_FOUND"
    VEHICLE_MAKE_NOT_FOUND = "VEHICLE_MAKE_NOT_FOUND"


class CertificateDataError(Exception):
    """Required business data is missing upstream; needs a human."""

    def __init__(self, code: CertificateDataErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code


class CertificateData(BaseModel):
    workshop_name: str
    workshop_address: str
    operating_workshop: Optional[str] = None
    vehicle_make: str
    vehicle_model: str
    vehicle_registration: Optional[str] = None
    vin: Optional[str] = None
    vehicle_mileage: Optional[str] = None
    job_number: int
    date: str          # YYYY-MM-DD
    time: str          # HH:MM:SS
    employee_name: str
    remote_operator_name: str
    calibration_tool_used: Optional[str] = None
    system_name: Optional[str] = None
    calibration_result: str = CALIBRATION_RESULT
    pre_scan_notes: str = NO_DTCS
    post_scan_notes: str = NO_DTCS


# =========================
# Builder
# =========================
class CertificateDataBuilder:
    def __init__(self, client: TicketingClient, extractor: RegMileageExtractor) -> None:
        self._client = client
        self._extractor = extractor
        self._models: TTLCache = TTLCache(maxsize=512, ttl=VEHICLE_CACHE_TTL_S)
        self._makes: TTLCache = TTLCache(maxsize=256, ttl=VEHICLE_CACHE_TTL_S)

    async def build_for_ticket(self, ticket_id: str, ticket: Optional[Ticket] = None) -> CertificateData:
        """Build certificate data; ``ticket`` may be passed to skip the refetch."""
        if ticket is None:
            try:
                ticket = await self._client.get_ticket(ticket_id)
            except NotFoundError as e:
                raise CertificateDataError(CertificateDataErrorCode.TICKET_NOT_FOUND,
                                           f"Ticket not found: {ticket_id}") from e

        if not ticket.vehicle_model_id:
            log.warning("certificate_missing_vehicle_model_id", extra={"kv": {"ticket_id": ticket_id}})
            raise CertificateDataError(CertificateDataErrorCode.MISSING_VEHICLE_MODEL_ID,
                                       f"Ticket {ticket_id} has no vehicle_model_id")
        if ticket.finished_at is None:
            log.warning("certificate_missing_finished_at", extra={"kv": {"ticket_id": ticket_id}})
            raise CertificateDataError(CertificateDataErrorCode.MISSING_FINISHED_AT,
                                       f"Ticket {ticket_id} has no finished_at timestamp")

        customer, vehicle_model = await asyncio.gather(
            self._load_customer(ticket),
            self._load_vehicle_model(ticket.vehicle_model_id),
        )
        vehicle_make = await self._load_vehicle_make(vehicle_model.make_id)
        workshop_address = await self._load_address(ticket, customer)
        employee_name = await self._load_employee_name(ticket)
        registration, mileage = await self._extract(ticket)

        finished = ticket.finished_at
        workshop_name = (customer.display_name if customer else None) or UNKNOWN_WORKSHOP
        data = CertificateData(
            workshop_name=workshop_name,
            workshop_address=workshop_address,
            operating_workshop=workshop_address,
            vehicle_make=vehicle_make.name,
            vehicle_model=vehicle_model.name,
            vehicle_registration=registration,
            vin=ticket.vin,
            vehicle_mileage=mileage,
            job_number=ticket.ticket_number,
            date=finished.strftime("%Y-%m-%d"),
            time=finished.strftime("%H:%M:%S"),
            employee_name=employee_name,
            remote_operator_name=employee_name,
        )
        log.info("certificate_data_built", extra={"kv": {
            "ticket_id": ticket_id,
            "ticket_number": ticket.ticket_number,
            "workshop_known": customer is not None,
            "has_registration": registration is not None,
            "has_mileage": mileage is not None,
        }})
        return data

    # ---------- optional parts ----------
    async def _load_customer(self, ticket: Ticket) -> Optional[Customer]:
        if not ticket.customer_id:
            log.warning("certificate_missing_customer_id", extra={"kv": {
                "ticket_id": ticket.id, "code": CertificateDataErrorCode.MISSING_CUSTOMER_ID.value,
            }})
            return None
        try:
            return await self._client.get_customer(ticket.customer_id)
        except Exception as e:
            log.warning("certificate_customer_unavailable", extra={"kv": {
                "ticket_id": ticket.id, "code": CertificateDataErrorCode.CUSTOMER_NOT_FOUND.value,
                "customer_id": ticket.customer_id, "error": str(e),
            }})
            return None

    async def _load_address(self, ticket: Ticket, customer: Optional[Customer]) -> str:
        if customer is None:
            return UNKNOWN_ADDRESS
        if not customer.primary_location_id:
            log.warning("certificate_missing_primary_location", extra={"kv": {
                "ticket_id": ticket.id, "code": CertificateDataErrorCode.MISSING_PRIMARY_LOCATION.value,
            }})
            return UNKNOWN_ADDRESS
        try:
            location = await self._client.get_location(customer.primary_location_id)
        except Exception as e:
            log.warning("certificate_location_unavailable", extra={"kv": {
                "ticket_id": ticket.id, "code": CertificateDataErrorCode.LOCATION_NOT_FOUND.value,
                "location_id": customer.primary_location_id, "error": str(e),
            }})
            return UNKNOWN_ADDRESS
        return location.format_address() or UNKNOWN_ADDRESS

    async def _load_employee_name(self, ticket: Ticket) -> str:
        if not ticket.operator_id:
            log.warning("certificate_missing_operator_id", extra={"kv": {"ticket_id": ticket.id}})
            return UNKNOWN_OPERATOR
        try:
            employee = await self._client.get_employee(ticket.operator_id)
        except Exception as e:
            log.warning("certificate_operator_unavailable", extra={"kv": {
                "ticket_id": ticket.id, "code": CertificateDataErrorCode.OPERATOR_NOT_FOUND.value,
                "operator_id": ticket.operator_id, "error": str(e),
            }})
            return UNKNOWN_OPERATOR
        return employee.full_name or UNKNOWN_OPERATOR

    async def _extract(self, ticket: Ticket) -> Tuple[Optional[str], Optional[str]]:
        try:
            result: ExtractionResult = await self._extractor.extract(ticket.id, ticket.ticket_number)
        except ExtractionSystemError as e:
            log.warning("certificate_extraction_system_error", extra={"kv": {
                "ticket_id": ticket.id, "code": e.code.value, "error": str(e),
            }})
            return None, None
        if result.errors:
            log.warning("certificate_extraction_warnings", extra={"kv": {
                "ticket_id": ticket.id,
                "codes": ",".join(result.error_codes),
                "registration_confidence": result.registration_confidence,
                "mileage_confidence": result.mileage_confidence,
            }})
        return result.vehicle_registration, result.vehicle_mileage

    # ---------- required parts (cached) ----------
    async def _load_vehicle_model(self, model_id: int) -> VehicleModel:
        cached = self._models.get(model_id)
        if cached is not None:
            return cached
        try:
            model = await self._client.get_vehicle_model(model_id)
        except NotFoundError as e:
            raise CertificateDataError(CertificateDataErrorCode.VEHICLE_MODEL_NOT_FOUND,
                                       f"Vehicle model not found: {model_id}") from e
        self._models[model_id] = model
        return model

    async def _load_vehicle_make(self, make_id: int) -> VehicleMake:
        cached = self._makes.get(make_id)
        if cached is not None:
            return cached
        try:
            make = await self._client.get_vehicle_make(make_id)
        except NotFoundError as e:
            raise CertificateDataError(CertificateDataErrorCode.VEHICLE_MAKE_NOT_FOUND,
                                       f"Vehicle make not found: {make_id}") from e
        self._makes[make_id] = make
        return make
