import json

import httpx
import pytest

from adapters.admission_gate import PostgrestAdmissionGate
from adapters.anticaptcha import AntiCaptchaSolver
from adapters.http_client import decode_json_body, extract_error_message
from adapters.profile_store import PostgrestProfileStore, ProfileStoreError
from adapters.session_cache import MemorySessionCache
from conftest import FakeClock, FakeSleep
from core.domain.errors import AdmissionUnavailableError, CaptchaUnavailableError


STORE = "https://store.example.test"


def test_session_cache_expires_entries():
    clock = FakeClock()
    cache = MemorySessionCache(clock=clock)
    cache.set("short", "a", ttl_seconds=10)
    cache.set("forever", "b")

    clock.advance(11)

    assert cache.get("short") is None
    assert cache.get("forever") == "b"


def test_session_cache_returns_cached_false():
    cache = MemorySessionCache()
    cache.set("flag", False, ttl_seconds=120)

    assert cache.get("flag") is False


def test_decode_json_body():
    assert decode_json_body(httpx.Response(200, text="<html>")) is None
    assert decode_json_body(httpx.Response(200, json=[1, 2])) == {"data": [1, 2]}
    assert decode_json_body(httpx.Response(200, json={"a": 1})) == {"a": 1}


def test_extract_error_message_prefers_nested_error():
    assert extract_error_message({"error": {"message": "nested"}, "message": "top"}, 500) == "nested"
    assert extract_error_message({"error": "plain"}, 500) == "plain"
    assert extract_error_message({"message": "top"}, 500) == "top"
    assert extract_error_message({}, 418) == "API call failed (418)"


@pytest.mark.asyncio
async def test_profile_store_maps_rows():
    def handler(request):
        assert request.headers["apikey"] == "anon"
        if request.url.path.endswith("/users"):
            return httpx.Response(
                200,
                json=[
                    {
                        "id": "u1",
                        "username": "alice",
                        "personal_auth_token": "tok",
                        "recaptcha_token": "cap",
                        "role": "admin",
                    }
                ],
            )
        if request.url.path.endswith("/token_ultra_registrations"):
            return httpx.Response(200, json=[{"status": "active", "expires_at": "2999-01-01T00:00:00Z"}])
        return httpx.Response(404, json=[])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = PostgrestProfileStore(base_url=STORE, api_key="anon", client=client)
        profile = await store.get_profile("u1")

    assert profile.personal_token == "tok"
    assert profile.captcha_key == "cap"
    assert profile.role == "admin"
    assert profile.has_active_entitlement()


@pytest.mark.asyncio
async def test_profile_store_http_error_raises():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="down"))) as client:
        store = PostgrestProfileStore(base_url=STORE, api_key="anon", client=client)
        with pytest.raises(ProfileStoreError):
            await store.get_shared_captcha_key()


@pytest.mark.asyncio
async def test_admission_gate_posts_rpc():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=None)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        gate = PostgrestAdmissionGate(base_url=STORE, api_key="anon", client=client)
        await gate.request_slot("https://s1.example.test", 10)

    assert seen[0].url.path == "/rest/v1/rpc/request_generation_slot"
    assert json.loads(seen[0].content) == {"cooldown_seconds": 10, "server_url": "https://s1.example.test"}


@pytest.mark.asyncio
async def test_admission_gate_failure_raises():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
        gate = PostgrestAdmissionGate(base_url=STORE, api_key="anon", client=client)
        with pytest.raises(AdmissionUnavailableError):
            await gate.request_slot("https://s1.example.test", 10)


@pytest.mark.asyncio
async def test_anticaptcha_polls_until_ready(settings):
    results = iter([{"errorId": 0, "status": "processing"}, {"errorId": 0, "status": "ready", "solution": {"gRecaptchaResponse": "solved"}}])
    created = []

    def handler(request):
        body = json.loads(request.content)
        if request.url.path == "/createTask":
            created.append(body)
            return httpx.Response(200, json={"errorId": 0, "taskId": 7})
        return httpx.Response(200, json=next(results))

    sleep = FakeSleep()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        solver = AntiCaptchaSolver(settings=settings, client=client, sleep=sleep)
        token = await solver.solve("key-1", "proj-1")

    assert token == "solved"
    assert created[0]["clientKey"] == "key-1"
    assert created[0]["task"]["websiteURL"].endswith("/project/proj-1")
    assert created[0]["task"]["pageAction"] == "FLOW_GENERATION"
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_anticaptcha_error_is_unavailable(settings):
    def handler(request):
        return httpx.Response(200, json={"errorId": 1, "errorCode": "ERROR_KEY_DOES_NOT_EXIST"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        solver = AntiCaptchaSolver(settings=settings, client=client, sleep=FakeSleep())
        with pytest.raises(CaptchaUnavailableError):
            await solver.solve("bad-key")
