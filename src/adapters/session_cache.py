"""Caché de sesión en memoria con TTL por entrada.

Compartida por credenciales y CAPTCHA dentro de un proceso: se inyecta en los
servicios (no es un singleton de módulo) y guarda el instante de escritura
junto al valor.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float
    ttl_seconds: float | None

    def is_fresh(self, now: float) -> bool:
        if self.ttl_seconds is None:
            return True
        return (now - self.stored_at) < self.ttl_seconds


class MemorySessionCache:
    """Implementa `core.interfaces.SessionCache`.

    Todas las operaciones son síncronas y sin `await`, así que son atómicas
    dentro de un event loop de asyncio.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl_seconds=ttl_seconds)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
