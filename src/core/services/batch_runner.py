"""Concurrent batch orchestration.

Runs N independent generation units for one request template and returns
exactly N `BatchUnit`s, index-aligned with the request order. Side effects
(progress bars, printing) stay in the caller through `BatchHooks`.

Flow:
1. resolve the credential once (a missing token aborts the whole batch);
2. if N > 1 and the template has input images, upload them once and pin
   every unit to that upload's server/token pair; if the shared upload
   fails, each unit uploads for itself;
3. launch unit i after i × stagger and let all units run concurrently;
   a failed unit never affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from adapters import backend_payloads
from core.config import AppSettings
from core.domain.errors import BackendError, OrchestratorError
from core.domain.models import (
    AffinityPair,
    BatchUnit,
    Credential,
    GenerationKind,
    ImageAsset,
    ServerEndpoint,
    UnitState,
    UserContext,
)
from core.services.credential_store import CredentialStore
from core.services.dispatcher import GenerationDispatcher
from core.services.server_selector import ServerSelector


logger = logging.getLogger(__name__)


@dataclass
class BatchTemplate:
    """What every unit of the batch generates."""

    kind: GenerationKind
    prompt: str
    aspect_ratio: str = "landscape"
    assets: Sequence[ImageAsset] = ()
    seed: int | None = None
    explicit_token: str | None = None
    pin: str | None = None

    @property
    def upload_service(self) -> str:
        return "imagen" if self.kind is GenerationKind.IMAGE_COMPOSE else "veo"

    def validate(self) -> None:
        if self.kind not in (
            GenerationKind.TEXT_TO_VIDEO,
            GenerationKind.IMAGE_TO_VIDEO,
            GenerationKind.IMAGE_COMPOSE,
        ):
            raise ValueError(f"{self.kind.value} cannot be run as a batch")
        if not self.prompt.strip():
            raise ValueError("prompt must not be empty")
        if self.kind is GenerationKind.TEXT_TO_VIDEO and self.assets:
            raise ValueError("text_to_video does not take input images")
        if self.kind is not GenerationKind.TEXT_TO_VIDEO and not self.assets:
            raise ValueError(f"{self.kind.value} needs at least one input image")
        if self.kind.is_video:
            backend_payloads.video_aspect(self.aspect_ratio)
        if self.assets:
            backend_payloads.image_aspect(self.aspect_ratio)


@dataclass
class BatchHooks:
    """Optional callbacks for UI layers."""

    progress: Callable[[int, int], None] | None = None
    unit_started: Callable[[BatchUnit], None] | None = None
    unit_done: Callable[[BatchUnit], None] | None = None
    status: Callable[[int, str], None] | None = None


@dataclass
class SharedUpload:
    media_ids: list[str]
    affinity: AffinityPair


@dataclass
class _Progress:
    total: int
    completed: int = 0


class ConcurrentBatchRunner:
    def __init__(
        self,
        *,
        settings: AppSettings,
        dispatcher: GenerationDispatcher,
        selector: ServerSelector,
        credentials: CredentialStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._dispatcher = dispatcher
        self._selector = selector
        self._credentials = credentials
        self._sleep = sleep

    async def upload_assets(
        self,
        template: BatchTemplate,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential,
    ) -> SharedUpload:
        """Upload every input image; the second and later are pinned to the first's pair."""

        media_ids: list[str] = []
        affinity: AffinityPair | None = None
        for asset in template.assets:
            result = await self._dispatcher.upload_image(
                asset,
                aspect_ratio=template.aspect_ratio,
                user=user,
                server=affinity.server if affinity else server,
                credential=affinity.credential if affinity else credential,
                service=template.upload_service,
            )
            media_ids.append(result.media_id)
            affinity = affinity or result.affinity
        if affinity is None:
            raise ValueError("no assets to upload")
        return SharedUpload(media_ids=media_ids, affinity=affinity)

    async def _generate(
        self,
        index: int,
        template: BatchTemplate,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential,
        shared: SharedUpload | None,
        hooks: BatchHooks,
    ) -> BatchUnit:
        def on_status(message: str) -> None:
            if hooks.status:
                hooks.status(index, message)

        uploaded = shared
        if uploaded is None and template.assets:
            uploaded = await self.upload_assets(template, user, server, credential)
        if uploaded is not None:
            server = uploaded.affinity.server
            credential = uploaded.affinity.credential

        if template.kind is GenerationKind.IMAGE_COMPOSE:
            if uploaded is None:
                # raises ValueError when the template has no inputs
                uploaded = await self.upload_assets(template, user, server, credential)
            image = await self._dispatcher.compose_image(
                template.prompt,
                media_inputs=[
                    (asset.caption, media_id) for asset, media_id in zip(template.assets, uploaded.media_ids)
                ],
                aspect_ratio=template.aspect_ratio,
                user=user,
                server=server,
                credential=credential,
                seed=template.seed,
                on_status=on_status,
            )
            return BatchUnit(
                index=index,
                state=UnitState.SUCCEEDED,
                artifact=image.encoded_image,
                affinity=image.affinity,
            )

        handle = await self._dispatcher.generate_video(
            template.prompt,
            aspect_ratio=template.aspect_ratio,
            user=user,
            server=server,
            credential=credential,
            image_media_id=uploaded.media_ids[0] if uploaded else None,
            seed=template.seed,
            on_status=on_status,
        )
        return BatchUnit(index=index, state=UnitState.SUCCEEDED, artifact=handle, affinity=handle.affinity)

    async def _safe_unit(
        self,
        index: int,
        template: BatchTemplate,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential,
        shared: SharedUpload | None,
        hooks: BatchHooks,
        progress: _Progress,
    ) -> BatchUnit:
        if hooks.unit_started:
            hooks.unit_started(BatchUnit(index=index, state=UnitState.IN_FLIGHT))
        try:
            unit = await self._generate(index, template, user, server, credential, shared, hooks)
        except OrchestratorError as exc:
            logger.warning("Unit %d failed: %s", index, exc.message)
            unit = BatchUnit(index=index, state=UnitState.FAILED, error=exc.classified())
        except Exception as exc:  # pragma: no cover
            logger.exception("Unit %d failed unexpectedly", index)
            unit = BatchUnit(index=index, state=UnitState.FAILED, error=BackendError(str(exc)).classified())

        progress.completed += 1
        if hooks.unit_done:
            hooks.unit_done(unit)
        if hooks.progress:
            hooks.progress(progress.completed, progress.total)
        return unit

    async def _try_shared_upload(
        self,
        template: BatchTemplate,
        user: UserContext,
        credential: Credential,
    ) -> SharedUpload | None:
        server = self._selector.select(self._selector.allowed_pool(user), user, template.pin)
        try:
            shared = await self.upload_assets(template, user, server, credential)
        except OrchestratorError as exc:
            logger.error("Failed to upload shared images, falling back to per-unit uploads: %s", exc.message)
            return None
        logger.info(
            "Uploaded %d shared image(s) once on %s. Media IDs: %s",
            len(shared.media_ids),
            shared.affinity.server.url,
            [media_id[:20] for media_id in shared.media_ids],
        )
        return shared

    async def run_batch(
        self,
        n: int,
        template: BatchTemplate,
        user: UserContext,
        hooks: BatchHooks | None = None,
    ) -> list[BatchUnit]:
        if n < 1:
            raise ValueError("batch size must be >= 1")
        template.validate()
        hooks = hooks or BatchHooks()

        credential = await self._credentials.resolve(user, template.explicit_token)

        shared: SharedUpload | None = None
        if n > 1 and template.assets:
            shared = await self._try_shared_upload(template, user, credential)

        servers = self._selector.distribute(n, user, template.pin)
        progress = _Progress(total=n)
        stagger = self._settings.batch_stagger_seconds

        async def launch(index: int) -> BatchUnit:
            if index and stagger:
                await self._sleep(index * stagger)
            return await self._safe_unit(
                index, template, user, servers[index], credential, shared, hooks, progress
            )

        units = await asyncio.gather(*(launch(i) for i in range(n)))
        return sorted(units, key=lambda unit: unit.index)

    async def run_unit(
        self,
        index: int,
        template: BatchTemplate,
        user: UserContext,
        hooks: BatchHooks | None = None,
    ) -> BatchUnit:
        """Re-run a single slot with its own upload (the retry path)."""

        template.validate()
        hooks = hooks or BatchHooks()
        credential = await self._credentials.resolve(user, template.explicit_token)
        server = self._selector.select(self._selector.allowed_pool(user), user, template.pin)
        progress = _Progress(total=1)
        return await self._safe_unit(index, template, user, server, credential, None, hooks, progress)
