"""CAPTCHA key selection and solving.

Two kinds of callers:
- entitled (active shared-key registration): use the shared key, falling
  back to their own key when no shared key is available;
- everyone else: their own key.

Solving is an enhancement, never a blocker: every failure ends as `None`
and the request goes out without a CAPTCHA token.
"""

from __future__ import annotations

import asyncio
import logging

from core.config import AppSettings
from core.domain.models import CaptchaCredential, CaptchaTier, UserContext
from core.interfaces import CaptchaSolver, ProfileStore, SessionCache


logger = logging.getLogger(__name__)

SHARED_KEY_CACHE_KEY = "captcha:shared_key"


def entitlement_key(user_id: str) -> str:
    return f"captcha:entitlement:{user_id}"


class CaptchaTokenProvider:
    def __init__(
        self,
        *,
        settings: AppSettings,
        profile_store: ProfileStore | None,
        solver: CaptchaSolver,
        cache: SessionCache,
    ) -> None:
        self._settings = settings
        self._profile_store = profile_store
        self._solver = solver
        self._cache = cache
        self._shared_key_lock = asyncio.Lock()

    async def has_shared_entitlement(self, user: UserContext, *, force_refresh: bool = False) -> bool:
        key = entitlement_key(user.user_id)
        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                return bool(cached)

        active = False
        if self._profile_store is not None:
            try:
                profile = await self._profile_store.get_profile(user.user_id)
            except Exception as exc:
                logger.error("Entitlement lookup failed for user %s: %s", user.user_id, exc)
                return False
            active = profile is not None and profile.has_active_entitlement()

        self._cache.set(key, active, ttl_seconds=self._settings.entitlement_ttl_seconds)
        return active

    async def get_shared_key(self, *, force_refresh: bool = False) -> str | None:
        if not force_refresh:
            cached = self._cache.get(SHARED_KEY_CACHE_KEY)
            if cached is not None:
                return cached or None

        async with self._shared_key_lock:
            # Another waiter may have refreshed it while we queued.
            if not force_refresh:
                cached = self._cache.get(SHARED_KEY_CACHE_KEY)
                if cached is not None:
                    return cached or None
            if self._profile_store is None:
                return None
            try:
                api_key = await self._profile_store.get_shared_captcha_key()
            except Exception as exc:
                logger.warning("Shared captcha key fetch failed: %s", exc)
                return None
            api_key = (api_key or "").strip()
            self._cache.set(SHARED_KEY_CACHE_KEY, api_key, ttl_seconds=self._settings.captcha_key_ttl_seconds)
            return api_key or None

    async def _personal_key(self, user: UserContext) -> str | None:
        if user.captcha_key and user.captcha_key.strip():
            return user.captcha_key.strip()
        if self._profile_store is None:
            return None
        profile = await self._profile_store.get_profile(user.user_id)
        if profile is None or not profile.captcha_key:
            return None
        return profile.captcha_key.strip() or None

    async def resolve_credential(self, user: UserContext, project_id: str | None = None) -> CaptchaCredential | None:
        project_id = project_id or self._settings.captcha_project_id

        if await self.has_shared_entitlement(user):
            shared = await self.get_shared_key()
            if shared:
                logger.info("Using shared captcha key (entitled user)")
                return CaptchaCredential(api_key=shared, project_id=project_id, tier=CaptchaTier.SHARED)
            logger.warning("Shared captcha key unavailable, falling back to personal key")

        personal = await self._personal_key(user)
        if personal:
            return CaptchaCredential(api_key=personal, project_id=project_id, tier=CaptchaTier.PERSONAL)

        logger.error("No captcha API key configured for user %s", user.user_id)
        return None

    async def get_token(self, user: UserContext, project_id: str | None = None) -> str | None:
        try:
            credential = await self.resolve_credential(user, project_id)
            if credential is None:
                return None
            if credential.project_id:
                logger.info("Solving reCAPTCHA for project %s...", credential.project_id[:8])
            token = await self._solver.solve(credential.api_key, credential.project_id)
        except Exception as exc:
            logger.error("Failed to get reCAPTCHA token: %s", exc)
            return None

        if not token:
            logger.error("Captcha solver returned an empty token")
            return None
        logger.info("reCAPTCHA token obtained (%d chars)", len(token))
        return token
