"""Best-effort admission slots on a backend server.

The external gate owns the cooldown state; here we only ask. If asking
fails the request proceeds unthrottled.
"""

from __future__ import annotations

import logging

from core.config import AppSettings
from core.domain.models import ServerEndpoint
from core.interfaces import AdmissionGate


logger = logging.getLogger(__name__)


class AdmissionController:
    def __init__(self, *, settings: AppSettings, gate: AdmissionGate | None) -> None:
        self._settings = settings
        self._gate = gate

    async def acquire_slot(self, server: ServerEndpoint, cooldown_seconds: int | None = None) -> bool:
        """Return True when the gate acknowledged the slot."""

        if self._gate is None:
            return False
        cooldown = self._settings.admission_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        try:
            await self._gate.request_slot(server.url, cooldown)
        except Exception as exc:
            logger.warning("Slot request failed for %s, proceeding anyway: %s", server.url, exc)
            return False
        return True
