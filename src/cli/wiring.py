"""Construcción de adaptadores concretos para la CLI."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from adapters.admission_gate import PostgrestAdmissionGate
from adapters.anticaptcha import AntiCaptchaSolver
from adapters.http_client import build_async_client
from adapters.profile_store import PostgrestProfileStore
from adapters.session_cache import MemorySessionCache
from core.config import AppSettings, write_user_env_vars
from core.domain.models import UserContext
from core.services.orchestrator import Orchestrator, build_orchestrator


logger = logging.getLogger(__name__)


def _persist_token(user: UserContext, token: str) -> None:
    env_path = write_user_env_vars({"GENRELAY_PERSONAL_TOKEN": token})
    logger.info("Saved refreshed personal token for user %s to %s", user.user_id, env_path)


@asynccontextmanager
async def open_orchestrator(
    settings: AppSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Orchestrator]:
    """Abre un cliente HTTP compartido y monta el orquestador sobre él.

    Sin `profile_store_url`/`profile_store_api_key` no hay almacén remoto ni
    gate de admisión: solo funciona el token explícito o el guardado en el
    .env de usuario. Ese token guardado es la caché local de credenciales;
    un token traído del almacén se vuelve a escribir ahí.
    """

    async with build_async_client(settings, base_url=settings.local_proxy_url, transport=transport) as client:
        profile_store = None
        gate = None
        if settings.profile_store_url and settings.profile_store_api_key:
            profile_store = PostgrestProfileStore(
                base_url=settings.profile_store_url,
                api_key=settings.profile_store_api_key,
                client=client,
            )
            gate = PostgrestAdmissionGate(
                base_url=settings.profile_store_url,
                api_key=settings.profile_store_api_key,
                client=client,
            )
        orch = build_orchestrator(
            settings=settings,
            client=client,
            cache=MemorySessionCache(),
            solver=AntiCaptchaSolver(settings=settings, client=client),
            profile_store=profile_store,
            gate=gate,
            on_token_refresh=_persist_token,
        )
        orch.credentials.seed(orch.user_from_settings(), settings.personal_token)
        yield orch
