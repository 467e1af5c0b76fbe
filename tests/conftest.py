import json
import random
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from adapters.session_cache import MemorySessionCache
from core.config import AppSettings
from core.domain.models import Credential, CredentialOrigin, ServerEndpoint, UserContext, UserProfile
from core.services.orchestrator import build_orchestrator


S1 = "https://s1.example.test"
S2 = "https://s2.example.test"
PREMIUM = "https://s12.example.test"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProfileStore:
    def __init__(self, *, profile=None, shared_key=None, fail=False):
        self.profile = profile
        self.shared_key = shared_key
        self.fail = fail
        self.profile_calls = 0
        self.shared_key_calls = 0
        self.saved_tokens = []

    async def get_profile(self, user_id):
        self.profile_calls += 1
        if self.fail:
            raise RuntimeError("profile store down")
        return self.profile

    async def set_personal_token(self, user_id, token):
        self.saved_tokens.append((user_id, token))

    async def set_captcha_key(self, user_id, api_key):
        pass

    async def get_shared_captcha_key(self):
        self.shared_key_calls += 1
        if self.fail:
            raise RuntimeError("profile store down")
        return self.shared_key


class FakeGate:
    def __init__(self, *, fail=False):
        self.fail = fail
        self.calls = []

    async def request_slot(self, server_url, cooldown_seconds):
        self.calls.append((server_url, cooldown_seconds))
        if self.fail:
            raise RuntimeError("rpc unavailable")


class FakeSolver:
    def __init__(self, *, token="captcha-token", fail=False):
        self.token = token
        self.fail = fail
        self.calls = []

    async def solve(self, api_key, project_id=None):
        self.calls.append((api_key, project_id))
        if self.fail:
            raise RuntimeError("solver exploded")
        return self.token


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def operations_response(status="MEDIA_GENERATION_STATUS_PENDING"):
    return {"operations": [{"operation": {"name": "op-1"}, "status": status}]}


class FakeBackend:
    """Proxy fleet behind `httpx.MockTransport`; routes match on path suffix."""

    def __init__(self):
        self.requests = []
        self.uploads = 0
        self.routes = {
            "/upload": self._upload,
            "/generate-t2v": lambda request, body: httpx.Response(200, json=operations_response()),
            "/generate-i2v": lambda request, body: httpx.Response(200, json=operations_response()),
            "/run-recipe": lambda request, body: httpx.Response(
                200,
                json={"imagePanels": [{"generatedImages": [{"encodedImage": "aW1hZ2U="}]}]},
            ),
            "/status": lambda request, body: httpx.Response(
                200, json=operations_response("MEDIA_GENERATION_STATUS_SUCCESSFUL")
            ),
        }

    def _upload(self, request, body):
        self.uploads += 1
        return httpx.Response(200, json={"mediaGenerationId": {"mediaGenerationId": f"media-{self.uploads}"}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content or b"{}")
        for suffix, handler in self.routes.items():
            if request.url.path.endswith(suffix):
                return handler(request, body)
        return httpx.Response(404, json={"error": {"message": "no route"}})

    def calls(self, suffix):
        return [request for request in self.requests if request.url.path.endswith(suffix)]

    @staticmethod
    def body(request):
        return json.loads(request.content)


def active_profile(**overrides):
    values = {
        "id": "u1",
        "username": "alice",
        "personal_token": "tok-remote-123456",
        "entitlement_status": "active",
        "entitlement_expires_at": datetime.now(timezone.utc) + timedelta(days=1),
    }
    values.update(overrides)
    return UserProfile(**values)


@pytest.fixture
def settings():
    return AppSettings(
        _env_file=None,
        server_pool=[S1, S2, PREMIUM],
        premium_server_url=PREMIUM,
        default_server_url=S1,
        batch_stagger_seconds=0.5,
        captcha_project_id="proj-default",
    )


@pytest.fixture
def user():
    return UserContext(user_id="u1", username="alice", role="user", captcha_key="personal-captcha")


@pytest.fixture
def server():
    return ServerEndpoint(url=S1)


@pytest.fixture
def explicit_credential():
    return Credential(token="tok-explicit-abcdef", origin=CredentialOrigin.EXPLICIT)


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest.fixture
def profile_store():
    return FakeProfileStore(profile=active_profile(entitlement_status=None), shared_key=None)


@pytest.fixture
def gate():
    return FakeGate()


@pytest.fixture
def solver():
    return FakeSolver()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest_asyncio.fixture
async def client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as http:
        yield http


@pytest.fixture
def orch(settings, client, cache, solver, profile_store, gate, fake_sleep):
    return build_orchestrator(
        settings=settings,
        client=client,
        cache=cache,
        solver=solver,
        profile_store=profile_store,
        gate=gate,
        rng=random.Random(7),
        sleep=fake_sleep,
    )
