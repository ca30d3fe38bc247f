"""Shared fixtures: a controllable clock, fake session contexts and an app wired with both."""

import re
from urllib.parse import parse_qs, urlsplit

import anyio
import pytest
from fastapi.testclient import TestClient
from starlette.responses import JSONResponse

from config import Config
from main import create_app
from oauth.pkce import compute_s256_challenge

REDIRECT_URI = "https://client.example/callback"
VERIFIER = "dBjftJeZ4CVP-mJ92K9qcNpXMSxvPJ2ctZ5rA7cHk7Y"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeContext:
    """Answers every request with JSON naming its session; runs until terminated."""

    def __init__(self, session_id: str, status: int = 200):
        self.session_id = session_id
        self.status = status
        self.requests = []
        self.terminated = False
        self._stop = anyio.Event()

    async def serve(self, *, task_status=anyio.TASK_STATUS_IGNORED):
        task_status.started()
        await self._stop.wait()

    async def handle_request(self, scope, receive, send):
        self.requests.append((scope["method"], dict(scope["headers"]).get(b"mcp-session-id")))
        response = JSONResponse(
            {"session": self.session_id, "requests": len(self.requests)},
            status_code=self.status,
            headers={"mcp-session-id": self.session_id},
        )
        await response(scope, receive, send)

    async def terminate(self):
        self.terminated = True
        self._stop.set()

    def stop(self):
        """Close from the inside, as a transport does when its stream ends."""
        self._stop.set()


class FakeContextFactory:
    def __init__(self, status: int = 200):
        self.status = status
        self.contexts = {}

    def __call__(self, session_id: str) -> FakeContext:
        context = FakeContext(session_id, self.status)
        self.contexts[session_id] = context
        return context


class FakeReportProducer:
    def __init__(self):
        self.calls = []

    async def produce(self, vin: str) -> dict:
        self.calls.append(vin)
        return {"vin": vin, "vehicle": {"make": "HONDA"}}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return Config({
        "base_url": "https://mcp.test/",
        "admin_key": "admin-secret",
        "max_clients": 5,
        "max_sessions": 3,
    })


@pytest.fixture
def context_factory():
    return FakeContextFactory()


@pytest.fixture
def app(config, context_factory, clock):
    return create_app(config, context_factory=context_factory, report_producer=FakeReportProducer(), clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# ============== OAuth flow helpers ==============

def register(client, redirect_uris=(REDIRECT_URI,), name="Test Client") -> dict:
    response = client.post("/oauth/register", json={"client_name": name, "redirect_uris": list(redirect_uris)})
    assert response.status_code == 201, response.text
    return response.json()


def authorize_params(client_id: str, **overrides) -> dict:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "state": "xyz",
        "code_challenge": compute_s256_challenge(VERIFIER),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return params


def extract_csrf(html: str) -> str:
    match = re.search(r'name="csrf" value="([0-9a-f]+)"', html)
    assert match, "consent page has no csrf field"
    return match.group(1)


def approve_form(client_id: str, csrf: str, **overrides) -> dict:
    form = authorize_params(client_id, csrf=csrf, action="allow")
    form.pop("response_type")
    form.update(overrides)
    return form


def obtain_code(client, client_id: str) -> str:
    page = client.get("/oauth/authorize", params=authorize_params(client_id))
    assert page.status_code == 200, page.text
    response = client.post(
        "/oauth/approve", data=approve_form(client_id, extract_csrf(page.text)), follow_redirects=False
    )
    assert response.status_code == 302, response.text
    return query_of(response.headers["location"])["code"]


def query_of(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}
