"""
utils/ticketing_client.py
-------------------------
Single point of outbound HTTP access to the workshop ticketing API.

Every resource call goes through ``request()`` which wraps, outermost first:

    rate limiter (shared per API) -> retry with backoff -> timeout (30s) -> GET

and maps failures onto ``utils.api_errors``.  Non-2xx responses are logged
with the endpoint path and status code only (no token, no query string).

The typed operations below are thin projections over ``request()``.
``NotFoundError`` is the one error the callers commonly treat as benign;
everything else is an infrastructure failure for the caller to propagate.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from utils.api_errors import ApiError, ApiErrorKind, NotFoundError, ServerError, error_for_status
from utils.auth import ClientCredentialsAuth
from utils.models import (
    ChannelPage,
    Customer,
    CustomerLocation,
    Employee,
    EventsPage,
    Ticket,
    VehicleMake,
    VehicleModel,
)
from utils.rate_limiter import RateLimiter
from utils.resilience import RetryPolicy, retry_with_backoff, with_timeout
from utils.settings import _get_float, _get_int

log = logging.getLogger("utils.ticketing_client")

REQUEST_TIMEOUT_S: float = _get_float("TICKETING_TIMEOUT_S", 30.0)
SLOW_TICKETING_MS: int   = _get_int("SLOW_TICKETING_MS", 4000)

REQUEST_RETRY = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0)

_BLANK_RUNS = re.compile(r"\n{3,}")


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


def _as_list(body: Any) -> List[Any]:
    """List endpoints answer with either a bare array or ``{"data": [...]}``."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    return []


class TicketingClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        auth: ClientCredentialsAuth,
        limiter: RateLimiter,
        retry_policy: RetryPolicy = REQUEST_RETRY,
        timeout_s: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._limiter = limiter
        self._retry_policy = retry_policy
        self._timeout_s = timeout_s

    # ------------------------------------------------------------------
    # Core request path
    # ------------------------------------------------------------------
    async def request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``endpoint`` through the resilience stack and return parsed JSON."""
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        op = f"GET {endpoint}"

        async def attempt() -> Any:
            return await with_timeout(self._send(endpoint, clean), self._timeout_s, op)

        return await self._limiter.throttle(lambda: retry_with_backoff(attempt, self._retry_policy, op))

    async def _send(self, endpoint: str, params: Dict[str, Any]) -> Any:
        token = await self._auth.get_access_token()
        t0 = time.perf_counter()
        try:
            res = await self._http.get(
                f"{self._base_url}{endpoint}",
                params=params,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            log.warning("ticketing_network_error", extra={"kv": {
                "endpoint": endpoint, "error": type(e).__name__,
            }})
            raise ApiError(f"Network error calling {endpoint}: {type(e).__name__}",
                           endpoint=endpoint, kind=ApiErrorKind.NETWORK) from e

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        if elapsed_ms > SLOW_TICKETING_MS:
            log.warning("slow_ticketing_call", extra={"kv": {"endpoint": endpoint, "elapsed_ms": elapsed_ms}})

        if not res.is_success:
            log.warning("ticketing_http_error", extra={"kv": {
                "endpoint": endpoint, "status_code": res.status_code, "elapsed_ms": elapsed_ms,
            }})
            if res.status_code == 401:
                self._auth.invalidate()
            raise error_for_status(res.status_code, endpoint)

        log.debug("ticketing_call_ok", extra={"kv": {"endpoint": endpoint, "elapsed_ms": elapsed_ms}})
        try:
            return res.json()
        except ValueError as e:
            raise ServerError(f"{endpoint} returned a non-JSON body",
                              status_code=res.status_code, endpoint=endpoint) from e

    # ------------------------------------------------------------------
    # Typed operations
    # ------------------------------------------------------------------
    async def get_ticket(self, ticket_id: str) -> Ticket:
        """Raises ``NotFoundError`` for unknown tickets."""
        body = await self.request(f"/v2/tickets/tickets/{_seg(ticket_id)}")
        return Ticket.model_validate(body)

    async def get_customer(self, customer_id: str) -> Customer:
        body = await self.request(f"/v2/customers/{_seg(customer_id)}")
        return Customer.model_validate(body)

    async def get_location(self, location_id: str) -> CustomerLocation:
        body = await self.request(f"/v2/customers/locations/{_seg(location_id)}")
        return CustomerLocation.model_validate(body)

    async def get_employee(self, employee_id: str) -> Employee:
        body = await self.request(f"/v2/customers/employees/{_seg(employee_id)}")
        return Employee.model_validate(body)

    async def get_vehicle_model(self, model_id: int) -> VehicleModel:
        body = await self.request(f"/v2/vehicles/models/{_seg(model_id)}")
        return VehicleModel.model_validate(body)

    async def get_vehicle_make(self, make_id: int) -> VehicleMake:
        body = await self.request(f"/v2/vehicles/makes/{_seg(make_id)}")
        return VehicleMake.model_validate(body)

    async def list_tickets(
        self,
        limit: Optional[int] = None,
        state: Optional[str] = None,
        externally_processed: Optional[bool] = None,
        ticket_number: Optional[int] = None,
    ) -> List[Ticket]:
        body = await self.request("/v2/tickets/tickets", {
            "limit": limit,
            "state": state,
            "externally_processed": externally_processed,
            "ticket_number": ticket_number,
        })
        return [Ticket.model_validate(t) for t in _as_list(body)]

    async def list_customers(self, enabled: Optional[bool] = None, limit: Optional[int] = None) -> List[Customer]:
        body = await self.request("/v2/customers", {"enabled": enabled, "limit": limit})
        return [Customer.model_validate(c) for c in _as_list(body)]

    async def list_events(self, event_type: str, limit: int = 100, after_id: Optional[str] = None) -> EventsPage:
        """One page of the system events feed.

        The feed accepts a single filter per request, so only ``type`` is
        sent; date filtering is the caller's job.
        """
        body = await self.request("/v2/system/events", {"type": event_type, "limit": limit, "after_id": after_id})
        if isinstance(body, list):
            return EventsPage(result=body)
        return EventsPage.model_validate(body or {})

    async def get_conversation_text(self, ticket_id: str) -> Optional[str]:
        """Chronological text of the customer channel, or None when there is none.

        ``None`` means "no conversation" (no channel, unknown channel, or no
        text messages).  A missing *ticket* still raises ``NotFoundError``.
        """
        ticket = await self.get_ticket(ticket_id)
        channel_id = ticket.customer_channel_id
        if not channel_id:
            log.info("conversation_no_channel", extra={"kv": {"ticket_id": ticket_id}})
            return None

        messages = []
        next_token: Optional[str] = None
        while True:
            try:
                body = await self.request(
                    f"/v2/tickets/messenger_channels/{_seg(channel_id)}",
                    {"channel_id": channel_id, "next_token": next_token},
                )
            except NotFoundError:
                log.info("conversation_channel_not_found", extra={"kv": {"ticket_id": ticket_id}})
                return None
            page = ChannelPage.model_validate(body or {})
            messages.extend(page.result)
            next_token = page.next_token
            if not next_token:
                break

        texts = [m for m in messages if m.type == "text" and not m.redacted and m.content]
        if not texts:
            return None
        # stable sort; undated messages keep their position at the end
        texts.sort(key=lambda m: (m.created_at is None, m.created_at.timestamp() if m.created_at else 0.0))

        joined = _BLANK_RUNS.sub("\n\n", "\n".join(m.content for m in texts)).strip()
        log.info("conversation_text_built", extra={"kv": {
            "ticket_id": ticket_id, "messages": len(texts), "chars": len(joined),
        }})
        return joined or None
