import httpx
import pytest

from adapters.session_cache import MemorySessionCache
from conftest import S1, FakeBackend, FakeProfileStore, FakeSolver, active_profile, operations_response
from core.domain.errors import (
    BackendError,
    ContentSafetyBlockedError,
    ModelAccessDeniedError,
    NoCredentialError,
)
from core.domain.models import (
    GenerationKind,
    GenerationRequest,
    ImageAsset,
    ServerEndpoint,
    TierModels,
)
from core.services.orchestrator import build_orchestrator


def deny_ultra(request, body):
    if body["requests"][0]["videoModelKey"].endswith("_ultra"):
        return httpx.Response(403, json={"error": {"message": "Model access denied for this account"}})
    return httpx.Response(200, json=operations_response())


@pytest.mark.asyncio
async def test_ultra_denied_retries_once_with_standard(orch, backend, user, server):
    backend.routes["/generate-t2v"] = deny_ultra
    statuses = []

    handle = await orch.dispatcher.generate_video(
        "a cat surfing", aspect_ratio="landscape", user=user, server=server, on_status=statuses.append
    )

    calls = backend.calls("/generate-t2v")
    assert len(calls) == 2
    assert [backend.body(c)["requests"][0]["videoModelKey"] for c in calls] == [
        "veo_3_1_t2v_fast_ultra",
        "veo_3_1_t2v_fast",
    ]
    assert calls[0].headers["authorization"] == calls[1].headers["authorization"]
    assert {c.url.host for c in calls} == {"s1.example.test"}
    assert handle.model_key == "veo_3_1_t2v_fast"
    assert handle.affinity.server == server
    assert handle.affinity.credential.token == "tok-remote-123456"
    assert "Retrying with standard model..." in statuses


@pytest.mark.asyncio
async def test_ultra_success_makes_a_single_call(orch, backend, user, server):
    result = await orch.dispatcher.dispatch(
        GenerationRequest.for_kind(
            GenerationKind.TEXT_TO_VIDEO,
            {"clientContext": {}, "requests": [{"videoModelKey": "x"}]},
            tier_models=TierModels(ultra="m-ultra", standard="m-std"),
        ),
        user,
        server,
    )

    assert result.attempts == 1
    assert result.model_key == "m-ultra"
    assert len(backend.calls("/generate-t2v")) == 1


@pytest.mark.asyncio
async def test_standard_denied_too_is_generic_failure(orch, backend, user, server):
    backend.routes["/generate-t2v"] = lambda request, body: httpx.Response(
        403, json={"error": {"message": "permission denied"}}
    )

    with pytest.raises(BackendError) as excinfo:
        await orch.dispatcher.generate_video("x", aspect_ratio="portrait", user=user, server=server)

    assert not isinstance(excinfo.value, ModelAccessDeniedError)
    assert len(backend.calls("/generate-t2v")) == 2


@pytest.mark.asyncio
async def test_safety_block_is_not_retried(orch, backend, user, server):
    backend.routes["/generate-t2v"] = lambda request, body: httpx.Response(
        400, json={"error": {"message": "Request blocked by safety filters"}}
    )

    with pytest.raises(ContentSafetyBlockedError) as excinfo:
        await orch.dispatcher.generate_video("x", aspect_ratio="landscape", user=user, server=server)

    assert excinfo.value.status_code == 400
    assert len(backend.calls("/generate-t2v")) == 1


@pytest.mark.asyncio
async def test_non_json_response_is_truncated_backend_error(orch, backend, user, server):
    backend.routes["/generate-t2v"] = lambda request, body: httpx.Response(502, text="x" * 300)

    with pytest.raises(BackendError) as excinfo:
        await orch.dispatcher.generate_video("x", aspect_ratio="landscape", user=user, server=server)

    assert excinfo.value.message == "Proxy returned non-JSON (502): " + "x" * 100
    assert len(backend.calls("/generate-t2v")) == 1


@pytest.mark.asyncio
async def test_captcha_token_and_headers_are_injected(orch, backend, solver, gate, user, server):
    await orch.dispatcher.generate_video("x", aspect_ratio="landscape", user=user, server=server)

    request = backend.calls("/generate-t2v")[0]
    context = backend.body(request)["clientContext"]
    assert context["recaptchaToken"] == "captcha-token"
    assert context["sessionId"].startswith(";")
    assert solver.calls[0][0] == "personal-captcha"
    assert solver.calls[0][1] == context["projectId"]
    assert request.headers["authorization"] == "Bearer tok-remote-123456"
    assert request.headers["x-user-username"] == "alice"
    assert gate.calls == [(S1, 10)]


@pytest.mark.asyncio
async def test_captcha_failure_does_not_block_request(settings, client, backend, user, server, gate):
    orch = build_orchestrator(
        settings=settings,
        client=client,
        cache=MemorySessionCache(),
        solver=FakeSolver(fail=True),
        profile_store=FakeProfileStore(profile=active_profile(entitlement_status=None)),
        gate=gate,
    )

    await orch.dispatcher.generate_video("x", aspect_ratio="landscape", user=user, server=server)

    context = backend.body(backend.calls("/generate-t2v")[0])["clientContext"]
    assert "recaptchaToken" not in context


@pytest.mark.asyncio
async def test_upload_skips_captcha_but_takes_admission(orch, backend, solver, gate, user, server):
    result = await orch.dispatcher.upload_image(
        ImageAsset(base64="aGVsbG8="), aspect_ratio="landscape", user=user, server=server
    )

    assert result.media_id == "media-1"
    assert solver.calls == []
    assert gate.calls == [(S1, 10)]
    assert backend.calls("/upload")[0].url.path == "/api/veo/upload"


@pytest.mark.asyncio
async def test_model_access_error_on_untiered_request_is_generic(orch, backend, user, server):
    backend.routes["/upload"] = lambda request, body: httpx.Response(
        403, json={"error": {"message": "forbidden"}}
    )

    with pytest.raises(BackendError) as excinfo:
        await orch.dispatcher.upload_image(
            ImageAsset(base64="aGVsbG8="), aspect_ratio="landscape", user=user, server=server
        )

    assert not isinstance(excinfo.value, ModelAccessDeniedError)
    assert len(backend.calls("/upload")) == 1


@pytest.mark.asyncio
async def test_missing_credential_fails_before_any_call(settings, client, backend, user, server):
    solver = FakeSolver()
    orch = build_orchestrator(
        settings=settings,
        client=client,
        cache=MemorySessionCache(),
        solver=solver,
        profile_store=FakeProfileStore(profile=None),
    )

    with pytest.raises(NoCredentialError):
        await orch.dispatcher.generate_video("x", aspect_ratio="landscape", user=user, server=server)

    assert backend.requests == []
    assert solver.calls == []


@pytest.mark.asyncio
async def test_explicit_credential_is_used_as_is(orch, backend, profile_store, user, server, explicit_credential):
    await orch.dispatcher.generate_video(
        "x", aspect_ratio="landscape", user=user, server=server, credential=explicit_credential
    )

    assert backend.calls("/generate-t2v")[0].headers["authorization"] == "Bearer tok-explicit-abcdef"
    assert profile_store.profile_calls == 1  # entitlement lookup only


@pytest.mark.asyncio
async def test_network_error_is_backend_error(settings, user, server, explicit_credential):
    def explode(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(explode)) as client:
        orch = build_orchestrator(settings=settings, client=client, cache=MemorySessionCache(), solver=FakeSolver())
        with pytest.raises(BackendError):
            await orch.dispatcher.upload_image(
                ImageAsset(base64="aGVsbG8="),
                aspect_ratio="landscape",
                user=user,
                server=server,
                credential=explicit_credential,
            )


@pytest.mark.asyncio
async def test_endpoint_url_for_remote_and_local_servers(orch, settings):
    request = GenerationRequest.for_kind(GenerationKind.IMAGE_COMPOSE, {})
    local = ServerEndpoint(url=settings.local_server_url, is_local=True)

    assert orch.dispatcher.endpoint_url(request, ServerEndpoint(url=S1)) == S1 + "/api/imagen/run-recipe"
    assert orch.dispatcher.endpoint_url(request, local) == "http://localhost:3000/api/imagen/run-recipe"


@pytest.mark.asyncio
async def test_local_server_uses_relative_path_on_proxy_base(settings, user, explicit_credential):
    backend = FakeBackend()
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(backend), base_url="http://proxy.internal"
    ) as client:
        orch = build_orchestrator(settings=settings, client=client, cache=MemorySessionCache(), solver=FakeSolver())
        local = ServerEndpoint(url=settings.local_server_url, is_local=True)
        await orch.dispatcher.upload_image(
            ImageAsset(base64="aGVsbG8="),
            aspect_ratio="landscape",
            user=user,
            server=local,
            credential=explicit_credential,
        )

    assert str(backend.requests[0].url) == "http://proxy.internal/api/veo/upload"


@pytest.mark.asyncio
async def test_body_without_client_context_skips_captcha(orch, backend, solver, user, server, explicit_credential):
    request = GenerationRequest.for_kind(
        GenerationKind.TEXT_TO_VIDEO, {"requests": [{"videoModelKey": "veo_3_1_t2v_fast"}]}
    )

    await orch.dispatcher.execute(request, user, server, explicit_credential)

    assert solver.calls == []
    assert "clientContext" not in backend.body(backend.calls("/generate-t2v")[0])
