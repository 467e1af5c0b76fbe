"""Wrapper de httpx.

Estandariza timeouts, headers y la decodificación de respuestas JSON de los
proxies. Se puede sustituir por un cliente con `httpx.MockTransport` en tests.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from core.config import AppSettings


NON_JSON_PREVIEW_CHARS = 100


def build_async_client(
    settings: AppSettings | None = None,
    *,
    extra_headers: dict[str, str] | None = None,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Crea un `httpx.AsyncClient` con defaults para JSON.

    `base_url` resuelve las rutas relativas (servidor local detrás de un
    reverse proxy); las URLs absolutas no se ven afectadas.
    """

    settings = settings or AppSettings()
    headers: dict[str, str] = {
        "User-Agent": settings.user_agent,
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if extra_headers:
        headers.update(extra_headers)
    kwargs: dict[str, Any] = {
        "timeout": httpx.Timeout(settings.http_timeout_seconds),
        "follow_redirects": True,
        "headers": headers,
    }
    if base_url:
        kwargs["base_url"] = base_url
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


def decode_json_body(response: httpx.Response) -> dict[str, Any] | None:
    """Devuelve el cuerpo JSON como dict, o None si no es JSON válido.

    Un JSON válido que no es objeto se envuelve como `{"data": ...}`.
    """

    text = response.text
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(payload, dict):
        return payload
    return {"data": payload}


def preview_text(text: str, max_chars: int = NON_JSON_PREVIEW_CHARS) -> str:
    return (text or "")[:max_chars]


def extract_error_message(payload: dict[str, Any], status_code: int) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
        return error["message"]
    if isinstance(error, str) and error:
        return error
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    return f"API call failed ({status_code})"
