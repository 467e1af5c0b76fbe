"""Proxied request dispatch.

`execute` performs exactly one call: optional CAPTCHA injection, best-effort
admission, credential resolution, POST, response classification.

`dispatch` wraps it with the two-state model tier policy:

    ULTRA --ModelAccessDenied--> STANDARD --ModelAccessDenied--> BackendError

Safety blocks and generic failures are raised as-is from either state.
Both attempts use the same server and the same credential, so the affinity
pair returned on success is the one later polls must reuse.
"""

from __future__ import annotations

import copy
import logging
from typing import Callable

import httpx

from adapters import backend_payloads
from adapters.http_client import decode_json_body, extract_error_message, preview_text
from core.config import AppSettings
from core.domain.errors import BackendError, ModelAccessDeniedError, classify_failure
from core.domain.models import (
    AffinityPair,
    Credential,
    DispatchResult,
    GenerationKind,
    GenerationRequest,
    ImageAsset,
    ImageResult,
    ModelTier,
    OperationHandle,
    ServerEndpoint,
    UploadResult,
    UserContext,
)
from core.services.admission import AdmissionController
from core.services.captcha_provider import CaptchaTokenProvider
from core.services.credential_store import CredentialStore


logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]

_NEXT_TIER: dict[ModelTier, ModelTier] = {ModelTier.ULTRA: ModelTier.STANDARD}


class GenerationDispatcher:
    def __init__(
        self,
        *,
        settings: AppSettings,
        client: httpx.AsyncClient,
        credentials: CredentialStore,
        captcha: CaptchaTokenProvider,
        admission: AdmissionController,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials
        self._captcha = captcha
        self._admission = admission

    def endpoint_url(self, request: GenerationRequest, server: ServerEndpoint) -> str:
        """Absolute URL for remote servers; relative path via the local proxy."""

        if server.is_local:
            if str(self._client.base_url):
                return request.relative_path
            return self._settings.local_proxy_url.rstrip("/") + request.relative_path
        return server.url + request.relative_path

    async def _inject_captcha(
        self,
        payload: dict,
        user: UserContext,
        on_status: StatusCallback | None,
    ) -> None:
        context = payload.get("clientContext")
        if not isinstance(context, dict):
            logger.warning("Request body has no clientContext, skipping reCAPTCHA")
            return
        if on_status:
            on_status("Solving reCAPTCHA...")
        token = await self._captcha.get_token(user, context.get("projectId"))
        if token:
            context["recaptchaToken"] = token
            context["sessionId"] = backend_payloads.session_id()
            logger.info("Injected reCAPTCHA token into request body")
        else:
            logger.error("No reCAPTCHA token, request will proceed without it")

    async def execute(
        self,
        request: GenerationRequest,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential | None = None,
        on_status: StatusCallback | None = None,
    ) -> DispatchResult:
        is_status_check = request.kind is GenerationKind.STATUS
        payload = copy.deepcopy(request.payload)

        if request.requires_captcha:
            await self._inject_captcha(payload, user, on_status)

        if request.requires_admission:
            if on_status:
                on_status("Queueing...")
            await self._admission.acquire_slot(server)
            if on_status:
                on_status("Processing...")

        if credential is None:
            credential = await self._credentials.resolve(user)

        url = self.endpoint_url(request, server)
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "x-user-username": user.username or "unknown",
        }
        if not is_status_check:
            logger.info("%s -> %s with token %s", request.kind.value, server.url, credential.fingerprint)

        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise BackendError(f"Request to {server.url} failed: {exc}") from exc

        status = response.status_code
        data = decode_json_body(response)
        if data is None:
            raise BackendError(
                f"Proxy returned non-JSON ({status}): {preview_text(response.text)}",
                status_code=status,
            )

        if not response.is_success:
            error = classify_failure(status, extract_error_message(data, status))
            if not is_status_check:
                logger.warning("%s failed on %s: %s", request.kind.value, server.url, error.message)
            raise error

        if not is_status_check:
            logger.info("Success using %s token on %s", credential.origin.value, server.url)
        return DispatchResult(data=data, affinity=AffinityPair(credential=credential, server=server))

    async def dispatch(
        self,
        request: GenerationRequest,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential | None = None,
        on_status: StatusCallback | None = None,
    ) -> DispatchResult:
        # Resolved once so both tiers go out with the same token.
        if credential is None:
            credential = await self._credentials.resolve(user)

        if request.tier_models is None:
            try:
                return await self.execute(request, user, server, credential, on_status)
            except ModelAccessDeniedError as exc:
                raise BackendError(exc.message, status_code=exc.status_code) from exc

        tier = ModelTier.ULTRA
        attempts = 0
        while True:
            attempts += 1
            model_key = request.tier_models.key_for(tier)
            attempt = request.model_copy(
                update={"payload": backend_payloads.with_model_key(request.payload, model_key)}
            )
            logger.info("Attempting %s with %s model: %s", request.kind.value, tier.value, model_key)
            try:
                result = await self.execute(attempt, user, server, credential, on_status)
            except ModelAccessDeniedError as exc:
                next_tier = _NEXT_TIER.get(tier)
                if next_tier is None:
                    raise BackendError(exc.message, status_code=exc.status_code) from exc
                logger.warning(
                    "%s model failed (%s). Retrying with %s model...",
                    tier.value,
                    exc.message[:100],
                    next_tier.value,
                )
                if on_status:
                    on_status("Retrying with standard model...")
                tier = next_tier
                continue
            return result.model_copy(update={"model_key": model_key, "attempts": attempts})

    async def upload_image(
        self,
        asset: ImageAsset,
        *,
        aspect_ratio: str,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential | None = None,
        service: str = "veo",
        on_status: StatusCallback | None = None,
    ) -> UploadResult:
        request = GenerationRequest.for_kind(
            GenerationKind.UPLOAD,
            backend_payloads.build_upload_body(asset, aspect_ratio),
            service=service,
        )
        result = await self.dispatch(request, user, server, credential, on_status)
        media_id = backend_payloads.extract_media_id(result.data)
        logger.info(
            "Image upload successful. Media ID: %s with token %s",
            media_id[:20],
            result.affinity.credential.fingerprint,
        )
        return UploadResult(media_id=media_id, affinity=result.affinity)

    async def generate_video(
        self,
        prompt: str,
        *,
        aspect_ratio: str,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential | None = None,
        image_media_id: str | None = None,
        seed: int | None = None,
        on_status: StatusCallback | None = None,
    ) -> OperationHandle:
        kind = GenerationKind.IMAGE_TO_VIDEO if image_media_id else GenerationKind.TEXT_TO_VIDEO
        models = backend_payloads.video_models(image_to_video=bool(image_media_id), aspect_ratio=aspect_ratio)
        body = backend_payloads.build_video_body(
            prompt=prompt,
            aspect_ratio=aspect_ratio,
            model_key=models.ultra,
            seed=seed,
            image_media_id=image_media_id,
        )
        request = GenerationRequest.for_kind(kind, body, tier_models=models)
        result = await self.dispatch(request, user, server, credential, on_status)
        operations = backend_payloads.extract_operations(result.data)
        logger.info("%s succeeded with %s. Operations: %d", kind.value, result.model_key, len(operations))
        return OperationHandle(operations=operations, affinity=result.affinity, model_key=result.model_key)

    async def compose_image(
        self,
        instruction: str,
        *,
        media_inputs: list[tuple[str, str]],
        aspect_ratio: str,
        user: UserContext,
        server: ServerEndpoint,
        credential: Credential | None = None,
        seed: int | None = None,
        on_status: StatusCallback | None = None,
    ) -> ImageResult:
        body = backend_payloads.build_recipe_body(
            instruction=instruction,
            media_inputs=media_inputs,
            aspect_ratio=aspect_ratio,
            seed=seed,
        )
        request = GenerationRequest.for_kind(GenerationKind.IMAGE_COMPOSE, body)
        result = await self.dispatch(request, user, server, credential, on_status)
        image = backend_payloads.extract_encoded_image(result.data)
        return ImageResult(encoded_image=image, affinity=result.affinity)
