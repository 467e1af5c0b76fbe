"""Taxonomía de errores del orquestador.

- Fatales: `NoCredentialError`, `ContentSafetyBlockedError`.
- Reintentable una vez: `ModelAccessDeniedError` (fallback de tier).
- Genérico: `BackendError` (red, 5xx, cuerpos no JSON...).
- Blandos: `CaptchaUnavailableError`, `AdmissionUnavailableError`; nunca
  salen de su subsistema, se convierten en `None`/`False` en el borde.
- `AffinityViolationError`: error de programación (poll con otro par).
"""

from __future__ import annotations

from core.domain.models import ClassifiedError


_SAFETY_WORDS = ("safety", "blocked")
_ACCESS_WORDS = ("model", "ultra", "access", "permission", "unauthorized")


class OrchestratorError(Exception):
    kind = "backend_error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def classified(self) -> ClassifiedError:
        return ClassifiedError(
            kind=self.kind,
            message=self.message,
            user_message=self.user_message,
            status_code=self.status_code,
        )


class NoCredentialError(OrchestratorError):
    kind = "no_credential"
    user_message = (
        "Authentication failed: no personal token found. "
        "Set your token and try again."
    )


class ContentSafetyBlockedError(OrchestratorError):
    kind = "content_safety_blocked"
    user_message = "The request was blocked by content safety. Please change your prompt or image."


class ModelAccessDeniedError(OrchestratorError):
    kind = "model_access_denied"


class BackendError(OrchestratorError):
    kind = "backend_error"


class AffinityViolationError(OrchestratorError):
    kind = "affinity_violation"
    user_message = "Internal error: status check used a different server or token."


class CaptchaUnavailableError(OrchestratorError):
    kind = "captcha_unavailable"


class AdmissionUnavailableError(OrchestratorError):
    kind = "admission_unavailable"


def is_safety_message(message: str) -> bool:
    lower = message.lower()
    return any(word in lower for word in _SAFETY_WORDS)


def classify_failure(status_code: int | None, message: str) -> OrchestratorError:
    """Clasifica una respuesta no-2xx del proxy."""

    is_client_error = status_code is not None and 400 <= status_code < 500
    if is_client_error and is_safety_message(message):
        return ContentSafetyBlockedError(f"[{status_code}] {message}", status_code=status_code)

    lower = message.lower()
    if not is_safety_message(message) and (
        status_code in (400, 403) or any(word in lower for word in _ACCESS_WORDS)
    ):
        return ModelAccessDeniedError(f"[{status_code}] {message}", status_code=status_code)

    return BackendError(message, status_code=status_code)
