"""Almacén de perfiles sobre PostgREST (Supabase REST).

Tablas usadas:
- `users`: `id, username, personal_auth_token, recaptcha_token, role`
- `token_ultra_registrations`: `user_id, status, expires_at`
- `master_recaptcha_tokens`: `api_key, status, updated_at`
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core.domain.models import UserProfile


logger = logging.getLogger(__name__)


class ProfileStoreError(RuntimeError):
    pass


class PostgrestProfileStore:
    """Implementa `core.interfaces.ProfileStore`."""

    def __init__(self, *, base_url: str, api_key: str, client: httpx.AsyncClient) -> None:
        self._rest = base_url.rstrip("/") + "/rest/v1"
        self._client = client
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }

    async def _select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        try:
            response = await self._client.get(f"{self._rest}/{table}", params=params, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ProfileStoreError(f"{table}: {exc}") from exc
        if response.status_code >= 400:
            raise ProfileStoreError(f"{table}: HTTP {response.status_code} {response.text[:200]}")
        rows = response.json()
        return rows if isinstance(rows, list) else []

    async def _update_user(self, user_id: str, values: dict[str, Any]) -> None:
        try:
            response = await self._client.patch(
                f"{self._rest}/users",
                params={"id": f"eq.{user_id}"},
                json=values,
                headers={**self._headers, "Prefer": "return=minimal"},
            )
        except httpx.HTTPError as exc:
            raise ProfileStoreError(f"users: {exc}") from exc
        if response.status_code >= 400:
            raise ProfileStoreError(f"users: HTTP {response.status_code} {response.text[:200]}")

    async def get_profile(self, user_id: str) -> UserProfile | None:
        users = await self._select(
            "users",
            {
                "id": f"eq.{user_id}",
                "select": "id,username,personal_auth_token,recaptcha_token,role",
                "limit": "1",
            },
        )
        if not users:
            return None
        row = users[0]

        registrations = await self._select(
            "token_ultra_registrations",
            {
                "user_id": f"eq.{user_id}",
                "select": "status,expires_at",
                "order": "created_at.desc",
                "limit": "1",
            },
        )
        registration = registrations[0] if registrations else {}

        return UserProfile(
            id=str(row.get("id") or user_id),
            username=row.get("username"),
            personal_token=row.get("personal_auth_token"),
            captcha_key=row.get("recaptcha_token"),
            role=row.get("role"),
            entitlement_status=registration.get("status"),
            entitlement_expires_at=registration.get("expires_at"),
        )

    async def set_personal_token(self, user_id: str, token: str) -> None:
        await self._update_user(user_id, {"personal_auth_token": token})

    async def set_captcha_key(self, user_id: str, api_key: str) -> None:
        await self._update_user(user_id, {"recaptcha_token": api_key})

    async def get_shared_captcha_key(self) -> str | None:
        rows = await self._select(
            "master_recaptcha_tokens",
            {
                "status": "eq.active",
                "select": "api_key",
                "order": "updated_at.desc",
                "limit": "1",
            },
        )
        if not rows:
            return None
        api_key = rows[0].get("api_key")
        return api_key if isinstance(api_key, str) and api_key.strip() else None
