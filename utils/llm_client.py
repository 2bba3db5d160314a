"""
utils/llm_client.py
-------------------
LLM fallback for registration / mileage extraction.

Used by ``utils.reg_mileage`` when the regex scan is ambiguous (zero or
several candidates for a field).  The model gets the normalised
conversation plus the regex candidates as hints and must answer with a
single JSON object::

    {"vehicleRegistration": str|null, "vehicleMileage": str|null,
     "registrationConfidence": number, "mileageConfidence": number,
     "reasoning": str}

Calls go through the same resilience stack as the ticketing API, on their
own rate limiter (request *and* token budget):

    rate limiter -> retry (3, 2s..20s) -> timeout (60s) -> ollama chat

Parsing is defensive: the first ``{`` to the last ``}`` is parsed and each
field coerced to its type.  A malformed answer degrades to "no data"
rather than raising; only transport failures raise.

Environment
-----------

``OLLAMA_HOST`` / ``EXTRACTION_MODEL``
    Server and model (see ``utils.settings``).

``OLLAMA_NUM_PREDICT``, ``OLLAMA_NUM_CTX``, ``OLLAMA_KEEP_ALIVE``
    Generation parameters.  Temperature is fixed at 0.

``EXTRACTOR_MAX_CHARS``
    Cap on conversation text sent to the model.  The *tail* is kept, since
    corrections come late in a conversation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import ollama

from logging_setup import sha256_8
from utils.api_errors import ApiError, ApiErrorKind, error_for_status
from utils.rate_limiter import RateLimiter, estimate_tokens
from utils.resilience import RetryPolicy, retry_with_backoff, with_timeout
from utils.settings import _get_float, _get_int

log = logging.getLogger("utils.llm_client")

# ---------------------------------------------------------------------------
# Generation and resilience knobs
# ---------------------------------------------------------------------------
OLLAMA_NUM_PREDICT: int = _get_int("OLLAMA_NUM_PREDICT", 300)
OLLAMA_NUM_CTX: int     = _get_int("OLLAMA_NUM_CTX", 8192)
OLLAMA_KEEP_ALIVE: str  = "30m"
MAX_CHARS_EXTRACT: int  = _get_int("EXTRACTOR_MAX_CHARS", 12000)
LLM_TIMEOUT_S: float    = _get_float("LLM_TIMEOUT_S", 60.0)
SLOW_LLM_MS: int        = _get_int("SLOW_LLM_MS", 8000)

LLM_RETRY = RetryPolicy(max_retries=3, initial_delay=2.0, max_delay=20.0)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
SYSTEM_PROMPT: str = (
    "You are a precise extraction engine. Extract at most one UK vehicle registration "
    "and one odometer mileage reading from the conversation. If you are not confident, "
    "return nulls. Respond with STRICT JSON only, no extra text, matching exactly the given schema."
)

_USER_PROMPT: str = """Task: From the conversation below, extract exactly one UK vehicle registration and one odometer mileage reading if you can do so with high confidence.

Rules:
- Use the most recent correction if the user says earlier values were wrong.
- Never guess. If you are not confident, return null for that field.
- The registration must be a real UK plate in formats like AA11 AAA (with or without a space).
- Mileage should be a numeric odometer reading (e.g. 12345, 45,000), usually in miles.

Conversation text (chronological):
{conversation}

Regex candidates (may contain outdated or incorrect values; prefer the latest valid correction in the conversation):
Registrations: {registrations}
Mileages: {mileages}

Respond with STRICT JSON ONLY, no markdown, no explanation outside the JSON, matching this shape exactly:
{{
  "vehicleRegistration": string | null,
  "vehicleMileage": string | null,
  "registrationConfidence": number,
  "mileageConfidence": number,
  "reasoning": string
}}"""


@dataclass(frozen=True)
class LlmExtraction:
    vehicle_registration: Optional[str] = None
    vehicle_mileage: Optional[str] = None
    registration_confidence: float = 0.0
    mileage_confidence: float = 0.0
    reasoning: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _tail(s: str, max_chars: int) -> str:
    s = (s or "").strip()
    return s if len(s) <= max_chars else s[-max_chars:]

def _det_seed(ticket_id: Optional[str], text: str) -> int:
    """Stable seed from the ticket id and the prompt text."""
    h = hashlib.sha256((ticket_id or "").encode("utf-8") + text.encode("utf-8")).hexdigest()
    return int(h[:8], 16)

def build_user_prompt(conversation: str, registrations: Sequence[str], mileages: Sequence[str]) -> str:
    return _USER_PROMPT.format(
        conversation=_tail(conversation, MAX_CHARS_EXTRACT),
        registrations=", ".join(registrations) if registrations else "None",
        mileages=", ".join(mileages) if mileages else "None",
    )

def _as_text(v: Any) -> Optional[str]:
    if isinstance(v, str):
        return v.strip() or None
    # numbers are fine for mileage; bool is an int subclass and is not
    if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v):
        return str(int(v)) if float(v).is_integer() else str(v)
    return None

def _as_confidence(v: Any) -> float:
    if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v):
        return min(1.0, max(0.0, float(v)))
    return 0.0

def parse_llm_response(content: str) -> LlmExtraction:
    """Parse the model answer; anything unusable becomes an empty result."""
    first, last = content.find("{"), content.rfind("}")
    if first == -1 or last <= first:
        return LlmExtraction(reasoning="Failed to parse model response as JSON")
    try:
        data = json.loads(content[first:last + 1])
    except ValueError:
        return LlmExtraction(reasoning="Failed to parse model response as JSON")
    if not isinstance(data, dict):
        return LlmExtraction(reasoning="Model response was not a JSON object")
    reasoning = data.get("reasoning")
    return LlmExtraction(
        vehicle_registration=_as_text(data.get("vehicleRegistration")),
        vehicle_mileage=_as_text(data.get("vehicleMileage")),
        registration_confidence=_as_confidence(data.get("registrationConfidence")),
        mileage_confidence=_as_confidence(data.get("mileageConfidence")),
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class RegMileageLlm:
    def __init__(
        self,
        client: ollama.AsyncClient,
        model: str,
        limiter: RateLimiter,
        retry_policy: RetryPolicy = LLM_RETRY,
        timeout_s: float = LLM_TIMEOUT_S,
    ) -> None:
        self._client = client
        self._model = model
        self._limiter = limiter
        self._retry_policy = retry_policy
        self._timeout_s = timeout_s

    async def extract_reg_and_mileage(
        self,
        conversation_text: str,
        registrations: Sequence[str],
        mileages: Sequence[str],
        ticket_id: Optional[str] = None,
    ) -> LlmExtraction:
        prompt = build_user_prompt(conversation_text, registrations, mileages)
        tokens = estimate_tokens(SYSTEM_PROMPT + "\n" + prompt)
        seed = _det_seed(ticket_id, prompt)
        log.info("llm_extract_invoked", extra={"kv": {
            "model": self._model,
            "input_chars": len(conversation_text or ""),
            "hash": sha256_8(conversation_text),
            "reg_candidates": len(registrations),
            "mileage_candidates": len(mileages),
            "est_tokens": tokens,
        }})

        async def attempt() -> str:
            return await with_timeout(self._chat(prompt, seed), self._timeout_s, "llm_extract")

        t0 = time.perf_counter()
        content = await self._limiter.throttle(
            lambda: retry_with_backoff(attempt, self._retry_policy, "llm_extract"),
            tokens=tokens,
        )
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        if elapsed_ms > SLOW_LLM_MS:
            log.warning("slow_llm_extract", extra={"kv": {"elapsed_ms": elapsed_ms}})

        result = parse_llm_response(content)
        log.info("llm_extract_complete", extra={"kv": {
            "elapsed_ms": elapsed_ms,
            "has_registration": result.vehicle_registration is not None,
            "has_mileage": result.vehicle_mileage is not None,
            "registration_confidence": result.registration_confidence,
            "mileage_confidence": result.mileage_confidence,
        }})
        return result

    async def _chat(self, prompt: str, seed: int) -> str:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        options: Dict[str, Any] = {
            "temperature": 0,
            "num_predict": OLLAMA_NUM_PREDICT,
            "num_ctx": OLLAMA_NUM_CTX,
            "top_p": 1,
            "seed": seed,
        }
        try:
            resp = await self._client.chat(
                model=self._model,
                messages=messages,
                format="json",
                options=options,
                keep_alive=OLLAMA_KEEP_ALIVE,
            )
        except ollama.ResponseError as e:
            if e.status_code >= 400:
                raise error_for_status(e.status_code, "ollama/chat") from e
            raise ApiError(f"LLM call failed: {e.error}", endpoint="ollama/chat", kind=ApiErrorKind.SERVER) from e
        except (httpx.HTTPError, ConnectionError) as e:
            raise ApiError(f"LLM unreachable: {type(e).__name__}", endpoint="ollama/chat",
                           kind=ApiErrorKind.NETWORK) from e
        return (resp["message"]["content"] or "").strip()
