"""Contratos de los colaboradores externos del orquestador.

Reglas de diseño:
- Todo lo que hace I/O es asíncrono.
- Los adaptadores pueden lanzar excepciones; el Core decide qué fallos son
  blandos (CAPTCHA, admisión) y cuáles se propagan.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from core.domain.models import UserProfile


@runtime_checkable
class ProfileStore(Protocol):
    """Almacén remoto de perfiles (CRUD)."""

    async def get_profile(self, user_id: str) -> UserProfile | None: ...

    async def set_personal_token(self, user_id: str, token: str) -> None: ...

    async def set_captcha_key(self, user_id: str, api_key: str) -> None: ...

    async def get_shared_captcha_key(self) -> str | None:
        """Clave CAPTCHA compartida activa más reciente (o None si no hay)."""

        ...


@runtime_checkable
class AdmissionGate(Protocol):
    """Gate atómico remoto por servidor + ventana de cooldown."""

    async def request_slot(self, server_url: str, cooldown_seconds: int) -> None: ...


@runtime_checkable
class CaptchaSolver(Protocol):
    async def solve(self, api_key: str, project_id: str | None = None) -> str | None: ...


@runtime_checkable
class SessionCache(Protocol):
    """Caché clave/valor de sesión con TTL opcional por entrada."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...
