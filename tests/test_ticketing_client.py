import httpx
import pytest
import pytest_asyncio

from conftest import FAST_RETRY, TICKET_ID
from utils.api_errors import AuthError, NotFoundError, ServerError
from utils.auth import ClientCredentialsAuth
from utils.rate_limiter import RateLimiter
from utils.ticketing_client import TicketingClient

BASE = "https://api.example.com"
TOKEN_URL = "https://auth.example.com/token"

TICKET = {
    "id": TICKET_ID,
    "ticket_number": 4711,
    "state": "closed",
    "customer_id": "cust-1",
    "customer_channel_id": "chan-1",
    "vehicle_model_id": 21,
    "finished_at": "2025-03-14T09:26:53Z",
}


class Api:
    """Routes requests by path; each route is a list of responses served in order."""

    def __init__(self, routes):
        self.routes = {path: list(responses) for path, responses in routes.items()}
        self.requests = []
        self.token_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_calls}", "expires_in": 3600})
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        # fresh copy so a repeated response can be served more than once
        return httpx.Response(resp.status_code, headers=resp.headers, content=resp.content)


@pytest_asyncio.fixture
async def make_client():
    opened = []

    def factory(routes):
        api = Api(routes)
        http = httpx.AsyncClient(transport=httpx.MockTransport(api))
        auth = ClientCredentialsAuth(http, TOKEN_URL, "id", "secret", retry_policy=FAST_RETRY)
        limiter = RateLimiter(max_requests=100, window_s=60.0, name="test")
        opened.append((http, limiter))
        return TicketingClient(http, BASE, auth, limiter, retry_policy=FAST_RETRY), api, auth

    yield factory
    for http, limiter in opened:
        await limiter.aclose()
        await http.aclose()


@pytest.mark.asyncio
async def test_get_ticket_sends_bearer_token(make_client):
    client, api, _ = make_client({f"/v2/tickets/tickets/{TICKET_ID}": [httpx.Response(200, json=TICKET)]})
    ticket = await client.get_ticket(TICKET_ID)
    assert ticket.ticket_number == 4711
    assert ticket.finished_at.tzinfo is not None
    req = api.requests[0]
    assert req.headers["Authorization"] == "Bearer tok-1"
    assert req.headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_not_found_is_typed_and_not_retried(make_client):
    client, api, _ = make_client({})
    with pytest.raises(NotFoundError):
        await client.get_ticket(TICKET_ID)
    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_server_errors_retried_then_succeed(make_client):
    client, api, _ = make_client({f"/v2/tickets/tickets/{TICKET_ID}": [
        httpx.Response(500), httpx.Response(502), httpx.Response(200, json=TICKET),
    ]})
    ticket = await client.get_ticket(TICKET_ID)
    assert ticket.id == TICKET_ID
    assert len(api.requests) == 3


@pytest.mark.asyncio
async def test_unauthorized_drops_cached_token(make_client):
    client, api, auth = make_client({"/v2/customers/cust-1": [httpx.Response(401)]})
    with pytest.raises(AuthError):
        await client.get_customer("cust-1")
    assert auth.cache.get() is None
    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_non_json_body_is_server_error(make_client):
    client, _, _ = make_client({"/v2/customers/cust-1": [httpx.Response(200, text="<html>oops</html>")]})
    with pytest.raises(ServerError):
        await client.get_customer("cust-1")


@pytest.mark.asyncio
async def test_list_endpoints_accept_both_shapes(make_client):
    client, api, _ = make_client({
        "/v2/tickets/tickets": [httpx.Response(200, json={"data": [TICKET]})],
        "/v2/customers": [httpx.Response(200, json=[{"id": "c1", "name": "A"}, {"id": "c2", "name": "B"}])],
    })
    tickets = await client.list_tickets(limit=5, state="closed")
    customers = await client.list_customers(enabled=True)

    assert [t.id for t in tickets] == [TICKET_ID]
    assert [c.id for c in customers] == ["c1", "c2"]
    params = api.requests[0].url.params
    assert params["limit"] == "5"
    assert params["state"] == "closed"
    assert "ticket_number" not in params


@pytest.mark.asyncio
async def test_list_events_paging_params(make_client):
    client, api, _ = make_client({"/v2/system/events": [httpx.Response(200, json={
        "result": [{"id": "e1", "type": "tickets.ticket.closed", "payload": {"ticket": {"id": TICKET_ID}}}],
        "after_id": "e1",
    })]})
    page = await client.list_events("tickets.ticket.closed", limit=10, after_id="e0")
    assert page.after_id == "e1"
    assert page.result[0].ticket_id == TICKET_ID
    params = api.requests[0].url.params
    assert params["type"] == "tickets.ticket.closed"
    assert params["after_id"] == "e0"


@pytest.mark.asyncio
async def test_conversation_text_is_chronological_and_filtered(make_client):
    channel = "/v2/tickets/messenger_channels/chan-1"
    client, api, _ = make_client({
        f"/v2/tickets/tickets/{TICKET_ID}": [httpx.Response(200, json=TICKET)],
        channel: [
            httpx.Response(200, json={"result": [
                {"type": "text", "content": "second", "created_at": "2025-03-14T09:05:00Z"},
                {"type": "text", "content": "first", "created_at": "2025-03-14T09:00:00Z"},
            ], "next_token": "page-2"}),
            httpx.Response(200, json={"result": [
                {"type": "text", "content": "secret", "redacted": True, "created_at": "2025-03-14T09:01:00Z"},
                {"type": "image", "content": "photo.jpg", "created_at": "2025-03-14T09:02:00Z"},
                {"type": "text", "content": "undated"},
                {"type": "text", "content": "third", "created_at": "2025-03-14T09:10:00Z"},
            ]}),
        ],
    })
    text = await client.get_conversation_text(TICKET_ID)
    assert text == "first\nsecond\nthird\nundated"

    channel_calls = [r for r in api.requests if r.url.path == channel]
    assert len(channel_calls) == 2
    assert channel_calls[0].url.params["channel_id"] == "chan-1"
    assert "next_token" not in channel_calls[0].url.params
    assert channel_calls[1].url.params["next_token"] == "page-2"


@pytest.mark.asyncio
async def test_conversation_missing_channel_is_none(make_client):
    no_channel = dict(TICKET, customer_channel_id=None)
    client, _, _ = make_client({f"/v2/tickets/tickets/{TICKET_ID}": [httpx.Response(200, json=no_channel)]})
    assert await client.get_conversation_text(TICKET_ID) is None


@pytest.mark.asyncio
async def test_conversation_unknown_channel_is_none(make_client):
    client, _, _ = make_client({f"/v2/tickets/tickets/{TICKET_ID}": [httpx.Response(200, json=TICKET)]})
    assert await client.get_conversation_text(TICKET_ID) is None
