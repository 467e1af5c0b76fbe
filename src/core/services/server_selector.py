"""Backend server selection.

Priority: explicit pin (if still allowed) → local endpoint for local
clients → uniform random pick among remote servers.
"""

from __future__ import annotations

import logging
import random

from core.config import AppSettings
from core.domain.models import ServerEndpoint, UserContext


logger = logging.getLogger(__name__)

_LOCAL_HOSTS = ("localhost", "127.0.0.1")


class ServerSelector:
    def __init__(self, *, settings: AppSettings, rng: random.Random | None = None) -> None:
        self._settings = settings
        self._rng = rng or random.Random()
        self._local = ServerEndpoint(url=settings.local_server_url, is_local=True)

    @property
    def local_endpoint(self) -> ServerEndpoint:
        return self._local

    def endpoint_for(self, url: str) -> ServerEndpoint:
        url = url.strip().rstrip("/")
        is_local = url == self._local.url or any(host in url for host in _LOCAL_HOSTS)
        return ServerEndpoint(url=url, is_local=is_local)

    def can_access_premium(self, user: UserContext) -> bool:
        return user.role in self._settings.elevated_roles

    def allowed_pool(self, user: UserContext) -> list[ServerEndpoint]:
        premium = (self._settings.premium_server_url or "").rstrip("/")
        seen: set[str] = set()
        pool: list[ServerEndpoint] = []
        for url in self._settings.server_pool:
            endpoint = self.endpoint_for(url)
            if endpoint.url in seen:
                continue
            seen.add(endpoint.url)
            if endpoint.is_local:
                continue
            if premium and endpoint.url == premium and not self.can_access_premium(user):
                continue
            pool.append(endpoint)

        if user.is_local_client:
            pool.insert(0, self._local)
        return pool

    def select(
        self,
        pool: list[ServerEndpoint],
        user: UserContext,
        pin: str | ServerEndpoint | None = None,
    ) -> ServerEndpoint:
        if pin is not None:
            pinned = pin if isinstance(pin, ServerEndpoint) else self.endpoint_for(pin)
            if pinned in pool:
                return pinned
            logger.warning("Pinned server %s is not in the allowed pool, ignoring pin", pinned.url)

        if user.is_local_client and self._local in pool:
            return self._local

        remote = [endpoint for endpoint in pool if not endpoint.is_local]
        if not remote:
            logger.warning("No remote servers available, using default %s", self._settings.default_server_url)
            return self.endpoint_for(self._settings.default_server_url)
        return self._rng.choice(remote)

    def distribute(
        self,
        n: int,
        user: UserContext,
        pin: str | ServerEndpoint | None = None,
    ) -> list[ServerEndpoint]:
        """One selection per batch unit, spreading load across the fleet."""

        pool = self.allowed_pool(user)
        servers = [self.select(pool, user, pin) for _ in range(n)]
        logger.info(
            "Distributing %d requests across %d servers: %s",
            n,
            len(pool),
            [server.url for server in servers],
        )
        return servers
