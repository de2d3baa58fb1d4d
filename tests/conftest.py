"""
Shared test fixtures for the Freshsales MCP server test suite.

Key fixtures:
- clock: A controllable time source injected into the TokenSigner, so tests
  can move time forward instead of sleeping
- signer: TokenSigner derived from the test operator secret
- make_token / make_auth_header: factories for signed tokens of either kind
- crm_backend: A fake Freshsales API served through httpx.MockTransport
- app / client: The full ASGI app and an httpx.AsyncClient wired to it
  (in-memory, no network)
- mcp_session: Starts the ASGI lifespan and opens MCP sessions on /mcp

Testing approach:
- test_tokens.py / test_oauth.py: unit tests for signing and the grant logic
- test_routes.py: HTTP tests for the OAuth, discovery and CORS surface
- test_auth.py: the resource gate, including the end-to-end flow
- test_tools.py: CRM tools against the fake backend, and over MCP
"""

import asyncio
import json

import httpx
import pytest

from freshsales_mcp.config import Settings
from freshsales_mcp.crm import CrmClient
from freshsales_mcp.server import create_app
from freshsales_mcp.tokens import Payload, TokenKind, TokenSigner

TEST_SECRET = "test-operator-secret"
TEST_BASE_URL = "acme.myfreshworks.com"

# RFC 7636 appendix B test vector.
PKCE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
PKCE_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class FakeClock:
    """Callable time source (epoch seconds) that only moves when told to."""

    def __init__(self, now: float = 1_760_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        crm_api_key=TEST_SECRET,
        crm_base_url=TEST_BASE_URL,
        _env_file=None,
    )


@pytest.fixture
def signer(settings, clock):
    return TokenSigner.from_secret(settings.signing_secret, clock=clock)


# ---------------------------------------------------------------------------
# Token factory fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token(signer):
    """
    Factory fixture to sign tokens with arbitrary payloads.

    Usage in tests:
        def test_something(make_token):
            token = make_token(client_id="alice")                  # access token
            code = make_token(kind=TokenKind.CODE, ttl_ms=-1)      # expired code
    """

    def _make_token(
        kind: TokenKind = TokenKind.ACCESS,
        client_id: str = "test-client",
        ttl_ms: int = 60_000,
        signer: TokenSigner = signer,
        **fields,
    ) -> str:
        payload = Payload(
            kind=kind,
            client_id=client_id,
            expires_at=signer.now_ms() + ttl_ms,
            **fields,
        )
        return signer.sign(payload)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    """Convenience fixture that returns a full "Bearer <token>" string."""

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# Fake Freshsales backend
# ---------------------------------------------------------------------------
class FakeFreshsales:
    """
    Minimal stand-in for the Freshsales REST API.

    Knows one contact (id 42, "Jane Doe"). Every request is recorded in
    `requests` so tests can assert on what the client sent.
    """

    CONTACT = {
        "id": 42,
        "display_name": "Jane Doe",
        "email": "jane@example.com",
        "mobile_number": "+34 600 000 000",
        "work_number": None,
        "city": "Madrid",
        "custom_field": {
            "cf_techo_de_presupuesto_fb": "300k",
            "cf_zonas_de_interes": "Chamberi",
            "cf_tiempo_decision": "",
        },
    }

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/crm/sales/api")
        method = request.method

        if method == "GET" and path == "/search":
            query = request.url.params.get("q", "").lower()
            if "jane" in query:
                return httpx.Response(200, json=[{"type": "contact", "id": 42, "name": "Jane Doe"}])
            return httpx.Response(200, json=[])

        if method == "GET" and path == "/contacts/42":
            return httpx.Response(200, json={"contact": self.CONTACT})

        if method == "GET" and path == "/contacts/42/notes":
            return httpx.Response(
                200,
                json={
                    "notes": [
                        {"created_at": "2026-10-01T10:00:00Z", "description": "Visited flat"},
                        {"created_at": "2026-09-20T09:00:00Z", "description": "First call"},
                    ]
                },
            )

        if method == "POST" and path == "/contacts":
            fields = json.loads(request.content)["contact"]
            if fields.get("email") == "dup@example.com":
                return httpx.Response(409, json={"errors": {"message": "duplicate"}})
            name = f"{fields.get('first_name', '')} {fields['last_name']}".strip()
            return httpx.Response(200, json={"contact": {"id": 7, "display_name": name, **fields}})

        if method == "PUT" and path == "/contacts/42":
            fields = json.loads(request.content)["contact"]
            if fields.get("mobile_number") == "+34 999":
                return httpx.Response(409, json={"errors": {"message": "unique"}})
            return httpx.Response(200, json={"contact": {**self.CONTACT, **fields}})

        if method == "POST" and path == "/notes":
            note = json.loads(request.content)["note"]
            return httpx.Response(201, json={"note": {"id": 1, **note}})

        return httpx.Response(404, json={"errors": {"message": "not found"}})


@pytest.fixture
def crm_backend():
    return FakeFreshsales()


@pytest.fixture
def crm(settings, crm_backend):
    return CrmClient(
        settings.crm_base_url,
        settings.crm_api_key.get_secret_value(),
        transport=httpx.MockTransport(crm_backend.handler),
    )


# ---------------------------------------------------------------------------
# ASGI app fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def app(settings, signer, crm):
    return create_app(settings, signer=signer, crm=crm)


@pytest.fixture
async def client(app):
    """httpx client for the plain HTTP routes (no lifespan needed for those)."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://testserver") as c:
        yield c


@pytest.fixture
async def mcp_session(app):
    """
    Factory for MCP sessions against /mcp.

    The Streamable HTTP session manager needs the ASGI lifespan running, so
    this fixture drives the lifespan protocol by hand: send
    "lifespan.startup", let the app initialize, then "lifespan.shutdown" on
    teardown.

    The factory returns (client, response) where response is the reply to the
    "initialize" request sent with the given Authorization header.
    """
    startup_complete = asyncio.Event()
    shutdown_triggered = asyncio.Event()

    async def receive():
        if not startup_complete.is_set():
            startup_complete.set()
            return {"type": "lifespan.startup"}
        await shutdown_triggered.wait()
        return {"type": "lifespan.shutdown"}

    async def send(message):
        pass

    scope = {"type": "lifespan", "asgi": {"version": "3.0"}}
    lifespan_task = asyncio.create_task(app(scope, receive, send))

    await startup_complete.wait()
    await asyncio.sleep(0.1)  # Give the task group time to initialize

    clients = []

    async def _open(auth_header: str | None):
        transport = httpx.ASGITransport(app=app)
        c = httpx.AsyncClient(transport=transport, base_url="https://testserver")
        clients.append(c)

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if auth_header is not None:
            headers["Authorization"] = auth_header

        response = await c.post(
            "/mcp",
            headers=headers,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "initialize",
                "params": {
                    "protocolVersion": "2025-03-26",
                    "capabilities": {},
                    "clientInfo": {"name": "test-client", "version": "1.0"},
                },
            },
        )
        return c, response

    yield _open

    for c in clients:
        await c.aclose()

    shutdown_triggered.set()
    await lifespan_task


def parse_sse_response(text: str) -> dict:
    """
    Parse an SSE (Server-Sent Events) response body into a JSON dict.

    MCP Streamable HTTP transport returns responses as SSE events:
        event: message
        data: {"jsonrpc":"2.0","id":1,"result":{...}}
    """
    for line in text.strip().split("\n"):
        if line.startswith("data: "):
            return json.loads(line[6:])
    return {}
