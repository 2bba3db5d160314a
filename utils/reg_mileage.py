"""
utils/reg_mileage.py
--------------------
Vehicle registration & mileage extraction.

Produces one ``ExtractionResult`` per ticket from the customer conversation.

1. Get the conversation text (passed in, or fetched from the ticketing API).
   No text -> null values, confidence 0, ``NO_CONVERSATION_DATA`` warning.
2. Normalise: strip markup, collapse whitespace.
3. Regex scan for UK plates and ``<number> miles`` readings, each with a
   +/-30 character snippet.  Mileage outside 0..500000 or in km is dropped.
4. Exactly one candidate for *both* fields -> fast path: validate and score
   0.95 (or 0.1 with an ``*_INVALID_FORMAT`` warning).  No LLM call.
5. Otherwise ask the LLM, passing the candidates as hints, then re-validate
   whatever it returns with the same rules.

Data-quality problems are never raised; they accumulate as warnings on the
result.  Infrastructure failures (conversation fetch, LLM transport) raise
``ExtractionSystemError`` so they are never mistaken for "no data".
"""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from bs4 import BeautifulSoup

from logging_setup import sha256_8
from utils.llm_client import LlmExtraction, RegMileageLlm
from utils.ticketing_client import TicketingClient

log = logging.getLogger("utils.reg_mileage")

FAST_PATH_CONFIDENCE = 0.95
INVALID_CONFIDENCE = 0.1
MAX_MILEAGE = 500_000
SNIPPET_RADIUS = 30

_TAG = re.compile(r"<[^>]+>")
_WS = re.compile(r"\s+")
_REG_CANDIDATE = re.compile(r"\b([A-Z]{2}\d{2}\s?[A-Z]{3})\b", re.I)
_MILEAGE_CANDIDATE = re.compile(r"\b(\d{1,3}(?:,\d{3})*|\d+)(?:\.\d+)?\s*(miles?|mi|km)\b", re.I)
_REG_VALID = re.compile(r"^[A-Z]{2}\d{2}[A-Z]{3}$")
_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")


# ---------------------------------------------------------------------------
# Result and error taxonomy
# ---------------------------------------------------------------------------
class Severity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


class ExtractionErrorCode(str, enum.Enum):
    NO_CONVERSATION_DATA = "NO_CONVERSATION_DATA"
    CONVERSATION_FETCH_FAILED = "CONVERSATION_FETCH_FAILED"
    REGISTRATION_NOT_FOUND = "REGISTRATION_NOT_FOUND"
    MILEAGE_NOT_FOUND = "MILEAGE_NOT_FOUND"
    REGISTRATION_AMBIGUOUS = "REGISTRATION_AMBIGUOUS"
    MILEAGE_AMBIGUOUS = "MILEAGE_AMBIGUOUS"
    REGISTRATION_INVALID_FORMAT = "REGISTRATION_INVALID_FORMAT"
    MILEAGE_INVALID_FORMAT = "MILEAGE_INVALID_FORMAT"
    EXTRACTION_TIMEOUT = "EXTRACTION_TIMEOUT"
    LLM_REQUEST_FAILED = "LLM_REQUEST_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def severity(self) -> Severity:
        if self in _SYSTEM_CODES:
            return Severity.ERROR
        return Severity.WARNING


_SYSTEM_CODES = frozenset({
    ExtractionErrorCode.CONVERSATION_FETCH_FAILED,
    ExtractionErrorCode.EXTRACTION_TIMEOUT,
    ExtractionErrorCode.LLM_REQUEST_FAILED,
    ExtractionErrorCode.UNKNOWN_ERROR,
})


class ExtractionMethod(str, enum.Enum):
    """How the final values were obtained."""
    NO_DATA = "no_data"
    REGEX = "regex"
    LLM = "llm"


@dataclass(frozen=True)
class ExtractionWarning:
    code: ExtractionErrorCode
    message: str

    @property
    def severity(self) -> Severity:
        return self.code.severity

    def as_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message, "severity": self.severity.value}


class ExtractionSystemError(Exception):
    """Conversation fetch or LLM call failed at the infrastructure level."""

    def __init__(self, code: ExtractionErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class CandidateSet:
    registrations: List[str] = field(default_factory=list)
    mileages: List[float] = field(default_factory=list)
    registration_snippets: List[str] = field(default_factory=list)
    mileage_snippets: List[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    vehicle_registration: Optional[str]
    vehicle_mileage: Optional[str]
    registration_confidence: float
    mileage_confidence: float
    method: ExtractionMethod
    errors: List[ExtractionWarning] = field(default_factory=list)
    registration_snippet: Optional[str] = None
    mileage_snippet: Optional[str] = None

    @property
    def error_codes(self) -> List[str]:
        return [e.code.value for e in self.errors]


# ---------------------------------------------------------------------------
# Text helpers and validation (pure)
# ---------------------------------------------------------------------------
def normalize_text(text: str) -> str:
    """Strip HTML-like tags, collapse whitespace, trim."""
    if _TAG.search(text):
        text = BeautifulSoup(text, "lxml").get_text(separator=" ")
    return _WS.sub(" ", text).strip()

def build_snippet(text: str, index: int, length: int) -> str:
    start = max(0, index - SNIPPET_RADIUS)
    end = min(len(text), index + length + SNIPPET_RADIUS)
    return text[start:end].strip()

def find_snippet(text: str, *values: str) -> Optional[str]:
    """Snippet around the first of ``values`` found in ``text``."""
    lowered = text.lower()
    for value in values:
        idx = lowered.find(value.lower())
        if idx != -1:
            return build_snippet(text, idx, len(value))
    return None

def validate_registration(reg: str) -> Optional[str]:
    """Canonical ``AB12 CDE`` form, or None if not a current-style UK plate."""
    compact = _WS.sub("", reg or "").upper()
    if not _REG_VALID.match(compact):
        return None
    return f"{compact[:4]} {compact[4:]}"

def validate_mileage(value: Optional[float]) -> Optional[int]:
    """Rounded mileage when finite and in [0, 500000), else None."""
    if value is None or not math.isfinite(value):
        return None
    if value < 0 or value >= MAX_MILEAGE:
        return None
    return int(round(value))

def parse_mileage_text(raw: Optional[str]) -> Optional[float]:
    """Leading number of ``raw`` with thousands separators removed ("45,000 miles" -> 45000.0)."""
    if raw is None:
        return None
    m = _LEADING_NUMBER.match(raw.replace(",", ""))
    return float(m.group(1)) if m else None

def _fmt_number(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else str(v)

def scan_candidates(text: str) -> CandidateSet:
    found = CandidateSet()
    for m in _REG_CANDIDATE.finditer(text):
        found.registrations.append(m.group(1).upper())
        found.registration_snippets.append(build_snippet(text, m.start(), len(m.group(0))))

    for m in _MILEAGE_CANDIDATE.finditer(text):
        if m.group(2).lower() == "km":
            continue
        value = float(m.group(1).replace(",", ""))
        if 0 <= value <= MAX_MILEAGE:
            found.mileages.append(value)
            found.mileage_snippets.append(build_snippet(text, m.start(), len(m.group(0))))
    return found


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class RegMileageExtractor:
    def __init__(self, ticketing: TicketingClient, llm: RegMileageLlm) -> None:
        self._ticketing = ticketing
        self._llm = llm

    async def extract(
        self,
        ticket_id: str,
        ticket_number: Optional[int] = None,
        conversation_text: Optional[str] = None,
    ) -> ExtractionResult:
        text = conversation_text
        if not text:
            try:
                text = await self._ticketing.get_conversation_text(ticket_id)
            except Exception as e:
                log.warning("conversation_fetch_failed", extra={"kv": {
                    "ticket_id": ticket_id, "ticket_number": ticket_number, "error": str(e),
                }})
                raise ExtractionSystemError(
                    ExtractionErrorCode.CONVERSATION_FETCH_FAILED,
                    f"Failed to fetch conversation for ticket {ticket_id}",
                ) from e

        if not text or not text.strip():
            log.info("extraction_no_conversation", extra={"kv": {"ticket_id": ticket_id}})
            return ExtractionResult(
                vehicle_registration=None,
                vehicle_mileage=None,
                registration_confidence=0.0,
                mileage_confidence=0.0,
                method=ExtractionMethod.NO_DATA,
                errors=[ExtractionWarning(
                    ExtractionErrorCode.NO_CONVERSATION_DATA,
                    "No conversation text available for extraction",
                )],
            )

        normalized = normalize_text(text)
        found = scan_candidates(normalized)
        log.info("extraction_candidates", extra={"kv": {
            "ticket_id": ticket_id,
            "text_hash": sha256_8(normalized),
            "registrations": len(found.registrations),
            "mileages": len(found.mileages),
        }})

        if len(found.registrations) == 1 and len(found.mileages) == 1:
            result = self._fast_path(found)
        else:
            llm_result = await self._ask_llm(ticket_id, ticket_number, normalized, found)
            result = self._from_llm(llm_result, normalized, found)

        log.info("extraction_complete", extra={"kv": {
            "ticket_id": ticket_id,
            "method": result.method.value,
            "has_registration": result.vehicle_registration is not None,
            "has_mileage": result.vehicle_mileage is not None,
            "registration_confidence": result.registration_confidence,
            "mileage_confidence": result.mileage_confidence,
            "warnings": result.error_codes,
        }})
        return result

    # ------------------------------------------------------------------
    def _fast_path(self, found: CandidateSet) -> ExtractionResult:
        errors: List[ExtractionWarning] = []
        reg = validate_registration(found.registrations[0])
        mileage = validate_mileage(found.mileages[0])

        reg_conf = FAST_PATH_CONFIDENCE
        if reg is None:
            errors.append(ExtractionWarning(
                ExtractionErrorCode.REGISTRATION_INVALID_FORMAT, "Extracted registration failed validation"))
            reg_conf = INVALID_CONFIDENCE

        mileage_conf = FAST_PATH_CONFIDENCE
        if mileage is None:
            errors.append(ExtractionWarning(
                ExtractionErrorCode.MILEAGE_INVALID_FORMAT, "Extracted mileage failed validation"))
            mileage_conf = INVALID_CONFIDENCE

        return ExtractionResult(
            vehicle_registration=reg,
            vehicle_mileage=str(mileage) if mileage is not None else None,
            registration_confidence=reg_conf,
            mileage_confidence=mileage_conf,
            method=ExtractionMethod.REGEX,
            errors=errors,
            registration_snippet=found.registration_snippets[0],
            mileage_snippet=found.mileage_snippets[0],
        )

    async def _ask_llm(
        self,
        ticket_id: str,
        ticket_number: Optional[int],
        normalized: str,
        found: CandidateSet,
    ) -> LlmExtraction:
        try:
            return await self._llm.extract_reg_and_mileage(
                normalized,
                found.registrations,
                [_fmt_number(m) for m in found.mileages],
                ticket_id=ticket_id,
            )
        except TimeoutError as e:
            log.warning("llm_extraction_timeout", extra={"kv": {"ticket_id": ticket_id, "ticket_number": ticket_number}})
            raise ExtractionSystemError(ExtractionErrorCode.EXTRACTION_TIMEOUT, "LLM extraction timed out") from e
        except Exception as e:
            log.warning("llm_extraction_failed", extra={"kv": {
                "ticket_id": ticket_id, "ticket_number": ticket_number, "error": str(e),
            }})
            raise ExtractionSystemError(ExtractionErrorCode.LLM_REQUEST_FAILED, "LLM extraction failed") from e

    def _from_llm(self, llm: LlmExtraction, text: str, found: CandidateSet) -> ExtractionResult:
        errors: List[ExtractionWarning] = []

        # registration
        reg: Optional[str] = None
        reg_conf = 0.0
        if llm.vehicle_registration is None:
            errors.append(self._missing(found.registrations, "REGISTRATION"))
        else:
            reg = validate_registration(llm.vehicle_registration)
            if reg is None:
                errors.append(ExtractionWarning(
                    ExtractionErrorCode.REGISTRATION_INVALID_FORMAT, "LLM-provided registration failed validation"))
                reg_conf = INVALID_CONFIDENCE
            else:
                reg_conf = llm.registration_confidence

        # mileage
        mileage: Optional[int] = None
        mileage_conf = 0.0
        if llm.vehicle_mileage is None:
            errors.append(self._missing(found.mileages, "MILEAGE"))
        else:
            mileage = validate_mileage(parse_mileage_text(llm.vehicle_mileage))
            if mileage is None:
                errors.append(ExtractionWarning(
                    ExtractionErrorCode.MILEAGE_INVALID_FORMAT, "LLM-provided mileage failed validation"))
                mileage_conf = INVALID_CONFIDENCE
            else:
                mileage_conf = llm.mileage_confidence

        return ExtractionResult(
            vehicle_registration=reg,
            vehicle_mileage=str(mileage) if mileage is not None else None,
            registration_confidence=reg_conf,
            mileage_confidence=mileage_conf,
            method=ExtractionMethod.LLM,
            errors=errors,
            registration_snippet=find_snippet(text, reg, reg.replace(" ", "")) if reg else None,
            mileage_snippet=find_snippet(text, str(mileage), f"{mileage:,}") if mileage is not None else None,
        )

    @staticmethod
    def _missing(candidates: Sequence[object], field_name: str) -> ExtractionWarning:
        if len(candidates) > 1:
            code = ExtractionErrorCode[f"{field_name}_AMBIGUOUS"]
            msg = f"{len(candidates)} conflicting {field_name.lower()} candidates; none confirmed"
        else:
            code = ExtractionErrorCode[f"{field_name}_NOT_FOUND"]
            msg = f"No {field_name.lower()} could be confirmed in the conversation"
        return ExtractionWarning(code, msg)
