"""Composition root for the orchestrator services.

Builds every service from its collaborators so that the CLI, tests and
future entry-points (APIs, workers) wire things the same way.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from core.config import AppSettings
from core.domain.models import UserContext
from core.interfaces import AdmissionGate, CaptchaSolver, ProfileStore, SessionCache
from core.services.admission import AdmissionController
from core.services.batch_runner import ConcurrentBatchRunner
from core.services.captcha_provider import CaptchaTokenProvider
from core.services.credential_store import CredentialStore
from core.services.dispatcher import GenerationDispatcher
from core.services.poller import OperationPoller
from core.services.server_selector import ServerSelector


@dataclass
class Orchestrator:
    settings: AppSettings
    credentials: CredentialStore
    captcha: CaptchaTokenProvider
    selector: ServerSelector
    admission: AdmissionController
    dispatcher: GenerationDispatcher
    poller: OperationPoller
    batch: ConcurrentBatchRunner

    def user_from_settings(self, *, captcha_key: str | None = None) -> UserContext:
        return UserContext(
            user_id=self.settings.user_id,
            username=self.settings.username,
            role=self.settings.role,
            captcha_key=captcha_key,
            is_local_client=self.settings.local_client,
        )


def build_orchestrator(
    *,
    settings: AppSettings,
    client: httpx.AsyncClient,
    cache: SessionCache,
    solver: CaptchaSolver,
    profile_store: ProfileStore | None = None,
    gate: AdmissionGate | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_token_refresh: Callable[[UserContext, str], None] | None = None,
) -> Orchestrator:
    credentials = CredentialStore(profile_store=profile_store, cache=cache, on_refresh=on_token_refresh)
    captcha = CaptchaTokenProvider(settings=settings, profile_store=profile_store, solver=solver, cache=cache)
    selector = ServerSelector(settings=settings, rng=rng)
    admission = AdmissionController(settings=settings, gate=gate)
    dispatcher = GenerationDispatcher(
        settings=settings,
        client=client,
        credentials=credentials,
        captcha=captcha,
        admission=admission,
    )
    poller = OperationPoller(dispatcher=dispatcher)
    batch = ConcurrentBatchRunner(
        settings=settings,
        dispatcher=dispatcher,
        selector=selector,
        credentials=credentials,
        sleep=sleep,
    )
    return Orchestrator(
        settings=settings,
        credentials=credentials,
        captcha=captcha,
        selector=selector,
        admission=admission,
        dispatcher=dispatcher,
        poller=poller,
        batch=batch,
    )
