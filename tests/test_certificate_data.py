from datetime import datetime, timedelta, timezone

import pytest

from conftest import TICKET_ID, FakeTicketing, make_ticket
from utils.certificate_data import (
    UNKNOWN_ADDRESS,
    UNKNOWN_OPERATOR,
    UNKNOWN_WORKSHOP,
    CertificateDataBuilder,
    CertificateDataError,
    CertificateDataErrorCode,
)
from utils.reg_mileage import ExtractionErrorCode, ExtractionMethod, ExtractionResult, ExtractionSystemError


class FakeExtractor:
    def __init__(self, result=None, error=None):
        self.result = result or ExtractionResult("AB12 CDE", "45000", 0.95, 0.95, ExtractionMethod.REGEX)
        self.error = error
        self.calls = []

    async def extract(self, ticket_id, ticket_number=None, conversation_text=None):
        self.calls.append((ticket_id, ticket_number))
        if self.error:
            raise self.error
        return self.result


def builder(ticketing, extractor=None):
    return CertificateDataBuilder(ticketing, extractor or FakeExtractor())


@pytest.mark.asyncio
async def test_builds_full_certificate(ticket):
    extractor = FakeExtractor()
    data = await builder(FakeTicketing(ticket), extractor).build_for_ticket(TICKET_ID)

    assert data.workshop_name == "Northside Motors"
    assert data.workshop_address == "High Street 12, LS1 4AB Leeds, UK"
    assert data.operating_workshop == data.workshop_address
    assert data.vehicle_make == "Volkswagen"
    assert data.vehicle_model == "Golf"
    assert data.vehicle_registration == "AB12 CDE"
    assert data.vehicle_mileage == "45000"
    assert data.vin == "WVWZZZ1JZXW000001"
    assert data.job_number == 4711
    assert (data.date, data.time) == ("2025-03-14", "09:26:53")
    assert data.employee_name == data.remote_operator_name == "Sam Okafor"
    assert data.calibration_result == "Calibration Successful"
    assert data.pre_scan_notes == data.post_scan_notes == "NO DTCs"
    assert data.calibration_tool_used is None and data.system_name is None
    assert extractor.calls == [(TICKET_ID, 4711)]


@pytest.mark.asyncio
async def test_date_and_time_are_utc():
    cet = timezone(timedelta(hours=1))
    t = make_ticket(finished_at=datetime(2025, 1, 1, 0, 30, tzinfo=cet))
    data = await builder(FakeTicketing(t)).build_for_ticket(TICKET_ID)
    assert (data.date, data.time) == ("2024-12-31", "23:30:00")


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides, code", [
    ({"vehicle_model_id": None}, CertificateDataErrorCode.MISSING_VEHICLE_MODEL_ID),
    ({"finished_at": None}, CertificateDataErrorCode.MISSING_FINISHED_AT),
    ({"vehicle_model_id": 999}, CertificateDataErrorCode.VEHICLE_MODEL_NOT_FOUND),
])
async def test_missing_required_data(overrides, code):
    with pytest.raises(CertificateDataError) as info:
        await builder(FakeTicketing(make_ticket(**overrides))).build_for_ticket(TICKET_ID)
    assert info.value.code is code


@pytest.mark.asyncio
async def test_missing_make_is_data_error(ticket):
    ticketing = FakeTicketing(ticket)
    ticketing.makes.clear()
    with pytest.raises(CertificateDataError) as info:
        await builder(ticketing).build_for_ticket(TICKET_ID)
    assert info.value.code is CertificateDataErrorCode.VEHICLE_MAKE_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_ticket_is_data_error():
    with pytest.raises(CertificateDataError) as info:
        await builder(FakeTicketing()).build_for_ticket(TICKET_ID)
    assert info.value.code is CertificateDataErrorCode.TICKET_NOT_FOUND


@pytest.mark.asyncio
async def test_optional_entities_fall_back_to_placeholders(ticket):
    ticketing = FakeTicketing(ticket)
    ticketing.customers.clear()
    ticketing.employees.clear()

    data = await builder(ticketing).build_for_ticket(TICKET_ID)

    assert data.workshop_name == UNKNOWN_WORKSHOP
    assert data.workshop_address == UNKNOWN_ADDRESS
    assert data.employee_name == UNKNOWN_OPERATOR


@pytest.mark.asyncio
async def test_missing_location_keeps_workshop_name(ticket):
    ticketing = FakeTicketing(ticket)
    ticketing.locations.clear()
    data = await builder(ticketing).build_for_ticket(TICKET_ID)
    assert data.workshop_name == "Northside Motors"
    assert data.workshop_address == UNKNOWN_ADDRESS


@pytest.mark.asyncio
async def test_extraction_system_error_leaves_fields_empty(ticket):
    extractor = FakeExtractor(error=ExtractionSystemError(ExtractionErrorCode.LLM_REQUEST_FAILED, "llm down"))
    data = await builder(FakeTicketing(ticket), extractor).build_for_ticket(TICKET_ID)
    assert data.vehicle_registration is None
    assert data.vehicle_mileage is None


@pytest.mark.asyncio
async def test_other_errors_propagate(ticket):
    class Broken(FakeTicketing):
        async def get_vehicle_model(self, model_id):
            raise RuntimeError("connection reset")

    with pytest.raises(RuntimeError):
        await builder(Broken(ticket)).build_for_ticket(TICKET_ID)


@pytest.mark.asyncio
async def test_vehicle_lookups_are_cached(ticket):
    ticketing = FakeTicketing(ticket)
    b = builder(ticketing)
    await b.build_for_ticket(TICKET_ID)
    await b.build_for_ticket(TICKET_ID, ticket=ticket)
    assert ticketing.calls.count("model:21") == 1
    assert ticketing.calls.count("make:7") == 1
    assert ticketing.calls.count(f"ticket:{TICKET_ID}") == 1

