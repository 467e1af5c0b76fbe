"""Personal auth token resolution.

Order: explicit override → locally cached token → remote profile store.
A remote hit is written through to the local cache so that the next
resolution in the same session never goes back to the network, and handed
to `on_refresh` so callers can persist it across sessions.
"""

from __future__ import annotations

import logging
from typing import Callable

from core.domain.errors import NoCredentialError
from core.domain.models import Credential, CredentialOrigin, UserContext
from core.interfaces import ProfileStore, SessionCache


logger = logging.getLogger(__name__)


def personal_token_key(user_id: str) -> str:
    return f"personal_token:{user_id}"


def _clean(token: str | None) -> str | None:
    if not isinstance(token, str):
        return None
    token = token.strip()
    return token or None


class CredentialStore:
    def __init__(
        self,
        *,
        profile_store: ProfileStore | None,
        cache: SessionCache,
        on_refresh: Callable[[UserContext, str], None] | None = None,
    ) -> None:
        self._profile_store = profile_store
        self._cache = cache
        self._on_refresh = on_refresh

    def seed(self, user: UserContext, token: str | None) -> None:
        """Load a token saved by a previous session into the local cache."""

        token = _clean(token)
        if token:
            self._cache.set(personal_token_key(user.user_id), token)

    def cached(self, user: UserContext) -> str | None:
        return _clean(self._cache.get(personal_token_key(user.user_id)))

    async def _fetch_remote(self, user: UserContext) -> str | None:
        if self._profile_store is None:
            return None
        logger.info("Fetching personal token for user %s from profile store", user.user_id)
        try:
            profile = await self._profile_store.get_profile(user.user_id)
        except Exception as exc:
            logger.error("Profile store lookup failed for user %s: %s", user.user_id, exc)
            return None
        if profile is None:
            logger.warning("No profile found for user %s", user.user_id)
            return None
        token = _clean(profile.personal_token)
        if token is None:
            logger.warning("Profile store returned no personal token for user %s", user.user_id)
        return token

    async def resolve(self, user: UserContext, explicit: str | None = None) -> Credential:
        token = _clean(explicit)
        if token:
            return Credential(token=token, origin=CredentialOrigin.EXPLICIT)

        token = self.cached(user)
        if token:
            return Credential(token=token, origin=CredentialOrigin.CACHED_LOCAL)

        token = await self._fetch_remote(user)
        if token:
            self._cache.set(personal_token_key(user.user_id), token)
            logger.info("Refreshed personal token from profile store and cached it locally")
            if self._on_refresh is not None:
                self._on_refresh(user, token)
            return Credential(token=token, origin=CredentialOrigin.FETCHED_REMOTE)

        logger.error("Authentication failed: no token in local cache or profile store")
        raise NoCredentialError(
            "Authentication failed: No Personal Token found. "
            "Please set your token (genrelay set-token)."
        )

    async def remember(self, user: UserContext, token: str) -> Credential:
        """Persist a user-supplied token locally and in the profile store."""

        credential = Credential(token=token, origin=CredentialOrigin.EXPLICIT)
        self._cache.set(personal_token_key(user.user_id), credential.token)
        if self._profile_store is not None:
            await self._profile_store.set_personal_token(user.user_id, credential.token)
        return credential
