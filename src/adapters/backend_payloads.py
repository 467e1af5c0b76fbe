"""Formato de las peticiones/respuestas del API de generación.

Solo lo que el orquestador construye o consume: claves de modelo por tier,
enums de aspect ratio, cuerpos de vídeo/upload/status/recipe y extractores
de respuesta.
"""

from __future__ import annotations

import random
import time
import uuid
from typing import Any

from core.domain.errors import BackendError
from core.domain.models import ImageAsset, OperationState, TierModels


MAX_SEED = 2_147_483_647

_VIDEO_MODELS: dict[tuple[bool, str], TierModels] = {
    (False, "landscape"): TierModels(ultra="veo_3_1_t2v_fast_ultra", standard="veo_3_1_t2v_fast"),
    (False, "portrait"): TierModels(
        ultra="veo_3_1_t2v_fast_portrait_ultra", standard="veo_3_1_t2v_fast_portrait"
    ),
    (True, "landscape"): TierModels(ultra="veo_3_1_i2v_s_fast_ultra", standard="veo_3_1_i2v_s_fast"),
    (True, "portrait"): TierModels(
        ultra="veo_3_1_i2v_s_fast_portrait_ultra", standard="veo_3_1_i2v_s_fast_portrait"
    ),
}

_IMAGE_ASPECTS = {
    "landscape": "IMAGE_ASPECT_RATIO_LANDSCAPE",
    "16:9": "IMAGE_ASPECT_RATIO_LANDSCAPE",
    "portrait": "IMAGE_ASPECT_RATIO_PORTRAIT",
    "9:16": "IMAGE_ASPECT_RATIO_PORTRAIT",
    "1:1": "IMAGE_ASPECT_RATIO_SQUARE",
    "square": "IMAGE_ASPECT_RATIO_SQUARE",
    "4:3": "IMAGE_ASPECT_RATIO_LANDSCAPE_FOUR_THREE",
    "3:4": "IMAGE_ASPECT_RATIO_PORTRAIT_THREE_FOUR",
}


def session_id() -> str:
    return f";{int(time.time() * 1000)}"


def random_seed() -> int:
    return random.randint(1, MAX_SEED)


def video_aspect(aspect_ratio: str) -> str:
    if aspect_ratio not in ("landscape", "portrait"):
        raise ValueError(f"video aspect ratio must be landscape or portrait, got {aspect_ratio!r}")
    return "VIDEO_ASPECT_RATIO_LANDSCAPE" if aspect_ratio == "landscape" else "VIDEO_ASPECT_RATIO_PORTRAIT"


def image_aspect(aspect_ratio: str) -> str:
    try:
        return _IMAGE_ASPECTS[aspect_ratio.strip().lower()]
    except KeyError:
        raise ValueError(f"unsupported image aspect ratio {aspect_ratio!r}") from None


def video_models(*, image_to_video: bool, aspect_ratio: str) -> TierModels:
    video_aspect(aspect_ratio)
    return _VIDEO_MODELS[(image_to_video, aspect_ratio)]


def build_video_body(
    *,
    prompt: str,
    aspect_ratio: str,
    model_key: str,
    seed: int | None = None,
    image_media_id: str | None = None,
    project_id: str | None = None,
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "aspectRatio": video_aspect(aspect_ratio),
        "seed": seed if seed is not None else random_seed(),
        "textInput": {"prompt": prompt},
        "videoModelKey": model_key,
        "metadata": {"sceneId": str(uuid.uuid4())},
    }
    if image_media_id:
        request["startImage"] = {"mediaId": image_media_id}
    return {
        "clientContext": {
            "sessionId": session_id(),
            "projectId": project_id or str(uuid.uuid4()),
            "tool": "PINHOLE",
            "userPaygateTier": "PAYGATE_TIER_TWO",
        },
        "requests": [request],
    }


def with_model_key(body: dict[str, Any], model_key: str) -> dict[str, Any]:
    """Copia del cuerpo con otra clave de modelo; el resto queda idéntico."""

    clone = dict(body)
    clone["requests"] = [{**item, "videoModelKey": model_key} for item in body.get("requests", [])]
    return clone


def build_upload_body(asset: ImageAsset, aspect_ratio: str) -> dict[str, Any]:
    return {
        "imageInput": {
            "rawImageBytes": asset.base64,
            "mimeType": asset.mime_type,
            "isUserUploaded": True,
            "aspectRatio": image_aspect(aspect_ratio),
        },
        "clientContext": {
            "sessionId": session_id(),
            "tool": "ASSET_MANAGER",
        },
    }


def build_recipe_body(
    *,
    instruction: str,
    media_inputs: list[tuple[str, str]],
    aspect_ratio: str,
    seed: int | None = None,
) -> dict[str, Any]:
    """Cuerpo de composición/edición: `media_inputs` = [(caption, media_id)]."""

    return {
        "clientContext": {
            "sessionId": session_id(),
            "projectId": str(uuid.uuid4()),
            "tool": "BACKBONE",
        },
        "seed": seed if seed is not None else random_seed(),
        "imageModelSettings": {
            "imageModel": "R2I",
            "aspectRatio": image_aspect(aspect_ratio),
        },
        "userInstruction": instruction,
        "recipeMediaInputs": [
            {
                "caption": caption,
                "mediaInput": {
                    "mediaCategory": "MEDIA_CATEGORY_SUBJECT",
                    "mediaGenerationId": media_id,
                },
            }
            for caption, media_id in media_inputs
        ],
    }


def build_status_body(operations: list[dict[str, Any]]) -> dict[str, Any]:
    return {"operations": operations}


def extract_media_id(data: dict[str, Any]) -> str:
    nested = data.get("mediaGenerationId")
    media_id = nested.get("mediaGenerationId") if isinstance(nested, dict) else nested
    media_id = media_id or data.get("mediaId")
    if not isinstance(media_id, str) or not media_id:
        raise BackendError("Upload succeeded but no mediaId returned")
    return media_id


def extract_encoded_image(data: dict[str, Any]) -> str:
    try:
        image = data["imagePanels"][0]["generatedImages"][0]["encodedImage"]
    except (KeyError, IndexError, TypeError):
        image = None
    if not isinstance(image, str) or not image:
        raise BackendError("The AI did not return an image. Please try a different prompt.")
    return image


def extract_operations(data: dict[str, Any]) -> list[dict[str, Any]]:
    operations = data.get("operations")
    if not isinstance(operations, list):
        return []
    return [op for op in operations if isinstance(op, dict)]


def _operation_state(op: dict[str, Any]) -> OperationState:
    status = str(op.get("status") or "").upper()
    if op.get("error") or status.endswith("FAILED"):
        return OperationState.FAILED
    result = op.get("result")
    if status.endswith("SUCCESSFUL") or status.endswith("SUCCEEDED"):
        return OperationState.SUCCEEDED
    if isinstance(result, dict) and (result.get("generatedVideo") or result.get("generatedVideos")):
        return OperationState.SUCCEEDED
    return OperationState.PENDING


def aggregate_state(operations: list[dict[str, Any]]) -> OperationState:
    """Estado global: pendiente si alguna sigue en curso; fallido si alguna falló."""

    if not operations:
        return OperationState.PENDING
    states = [_operation_state(op) for op in operations]
    if OperationState.PENDING in states:
        return OperationState.PENDING
    if OperationState.FAILED in states:
        return OperationState.FAILED
    return OperationState.SUCCEEDED
