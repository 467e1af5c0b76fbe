"""Gate de admisión remoto: RPC `request_generation_slot` (PostgREST)."""

from __future__ import annotations

import httpx

from core.domain.errors import AdmissionUnavailableError


class PostgrestAdmissionGate:
    """Implementa `core.interfaces.AdmissionGate`.

    La RPC bloquea del lado del servidor hasta que haya hueco en la ventana
    de cooldown del servidor pedido; aquí solo se espera la respuesta.
    """

    def __init__(self, *, base_url: str, api_key: str, client: httpx.AsyncClient) -> None:
        self._url = base_url.rstrip("/") + "/rest/v1/rpc/request_generation_slot"
        self._client = client
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }

    async def request_slot(self, server_url: str, cooldown_seconds: int) -> None:
        try:
            response = await self._client.post(
                self._url,
                json={"cooldown_seconds": cooldown_seconds, "server_url": server_url},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise AdmissionUnavailableError(str(exc)) from exc
        if response.status_code >= 400:
            raise AdmissionUnavailableError(
                f"request_generation_slot HTTP {response.status_code}",
                status_code=response.status_code,
            )
