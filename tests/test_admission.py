import pytest

from conftest import S1, FakeGate
from core.domain.models import ServerEndpoint
from core.services.admission import AdmissionController


@pytest.mark.asyncio
async def test_slot_requested_with_default_cooldown(settings):
    gate = FakeGate()
    admission = AdmissionController(settings=settings, gate=gate)

    assert await admission.acquire_slot(ServerEndpoint(url=S1)) is True
    assert gate.calls == [(S1, 10)]


@pytest.mark.asyncio
async def test_explicit_cooldown_overrides_default(settings):
    gate = FakeGate()
    admission = AdmissionController(settings=settings, gate=gate)

    await admission.acquire_slot(ServerEndpoint(url=S1), cooldown_seconds=0)

    assert gate.calls == [(S1, 0)]


@pytest.mark.asyncio
async def test_gate_failure_proceeds(settings):
    admission = AdmissionController(settings=settings, gate=FakeGate(fail=True))

    assert await admission.acquire_slot(ServerEndpoint(url=S1)) is False


@pytest.mark.asyncio
async def test_no_gate_configured(settings):
    admission = AdmissionController(settings=settings, gate=None)

    assert await admission.acquire_slot(ServerEndpoint(url=S1)) is False
