"""Solver de reCAPTCHA vía anti-captcha.com (createTask / getTaskResult).

Puede tardar segundos: crea la tarea y hace polling hasta `ready` o timeout.
Cualquier fallo se expresa como `CaptchaUnavailableError`; quien lo llama
decide continuar sin token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from core.config import AppSettings
from core.domain.errors import CaptchaUnavailableError


logger = logging.getLogger(__name__)


class AntiCaptchaSolver:
    """Implementa `core.interfaces.CaptchaSolver`."""

    task_type = "RecaptchaV3TaskProxyless"

    def __init__(
        self,
        *,
        settings: AppSettings,
        client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._sleep = sleep
        self._base_url = settings.anticaptcha_base_url.rstrip("/")

    def website_url(self, project_id: str | None) -> str:
        base = self._settings.captcha_website_url.rstrip("/")
        if project_id:
            return f"{base}/project/{project_id}"
        return base

    async def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(f"{self._base_url}/{method}", json=body)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CaptchaUnavailableError(f"anti-captcha {method}: {exc}") from exc
        if not isinstance(payload, dict):
            raise CaptchaUnavailableError(f"anti-captcha {method}: unexpected payload")
        if payload.get("errorId"):
            code = payload.get("errorCode") or payload.get("errorId")
            detail = payload.get("errorDescription") or ""
            raise CaptchaUnavailableError(f"anti-captcha {method}: {code} {detail}".strip())
        return payload

    async def solve(self, api_key: str, project_id: str | None = None) -> str | None:
        created = await self._call(
            "createTask",
            {
                "clientKey": api_key,
                "task": {
                    "type": self.task_type,
                    "websiteURL": self.website_url(project_id),
                    "websiteKey": self._settings.captcha_website_key,
                    "minScore": 0.7,
                    "pageAction": self._settings.captcha_page_action,
                    "isEnterprise": True,
                },
            },
        )
        task_id = created.get("taskId")
        if not task_id:
            raise CaptchaUnavailableError("anti-captcha createTask: no taskId")

        deadline = time.monotonic() + self._settings.captcha_timeout_seconds
        while time.monotonic() < deadline:
            await self._sleep(self._settings.captcha_poll_interval_seconds)
            result = await self._call("getTaskResult", {"clientKey": api_key, "taskId": task_id})
            if result.get("status") != "ready":
                continue
            solution = result.get("solution") or {}
            token = solution.get("gRecaptchaResponse") if isinstance(solution, dict) else None
            if isinstance(token, str) and token:
                return token
            raise CaptchaUnavailableError("anti-captcha getTaskResult: empty solution")

        raise CaptchaUnavailableError(f"anti-captcha task {task_id} timed out")
