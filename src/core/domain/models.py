"""Modelos del dominio (Pydantic v2).

Describen *qué* circula por el orquestador (credenciales, servidores, pares
de afinidad, handles de operación, unidades de lote), no *cómo* se obtiene.

Nota:
- `AffinityPair` y `ServerEndpoint` son inmutables: el par que produjo un
  éxito se pasa por valor a las fases siguientes (upload → generate → poll).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict


class CredentialOrigin(str, Enum):
    EXPLICIT = "explicit"
    CACHED_LOCAL = "cached_local"
    FETCHED_REMOTE = "fetched_remote"


class CaptchaTier(str, Enum):
    SHARED = "shared"
    PERSONAL = "personal"


class GenerationKind(str, Enum):
    """Tipos de llamada proxied.

    `UPLOAD` y `STATUS` no son generaciones, pero pasan por el mismo
    despachador; `STATUS` es la única llamada ligera (sin admisión).
    """

    TEXT_TO_VIDEO = "text_to_video"
    IMAGE_TO_VIDEO = "image_to_video"
    IMAGE_COMPOSE = "image_compose"
    UPLOAD = "upload"
    STATUS = "status"

    @property
    def service(self) -> str:
        if self is GenerationKind.IMAGE_COMPOSE:
            return "imagen"
        return "veo"

    @property
    def relative_path(self) -> str:
        return {
            GenerationKind.TEXT_TO_VIDEO: "/generate-t2v",
            GenerationKind.IMAGE_TO_VIDEO: "/generate-i2v",
            GenerationKind.IMAGE_COMPOSE: "/run-recipe",
            GenerationKind.UPLOAD: "/upload",
            GenerationKind.STATUS: "/status",
        }[self]

    @property
    def is_video(self) -> bool:
        return self in (GenerationKind.TEXT_TO_VIDEO, GenerationKind.IMAGE_TO_VIDEO)

    @property
    def is_generation_class(self) -> bool:
        return self is not GenerationKind.STATUS


class ModelTier(str, Enum):
    ULTRA = "ultra"
    STANDARD = "standard"


class UnitState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OperationState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Credential(BaseModel):
    """Token de autenticación resuelto para una petición."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., description="Bearer token enviado al proxy.")
    origin: CredentialOrigin = Field(..., description="De dónde salió el token.")

    @field_validator("token")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("credential token must be non-empty")
        return value

    @property
    def fingerprint(self) -> str:
        """Últimos 6 caracteres; lo único que se permite loggear."""

        return f"...{self.token[-6:]}"


class ServerEndpoint(BaseModel):
    """Servidor proxy del pool. Una identidad lógica por URL."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    is_local: bool = Field(default=False)

    @field_validator("url")
    @classmethod
    def _normalize(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("server url must be non-empty")
        return value


class CaptchaCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str = Field(..., min_length=1)
    project_id: str | None = None
    tier: CaptchaTier


class TierModels(BaseModel):
    """Par de claves de modelo para la política ultra → standard."""

    model_config = ConfigDict(frozen=True)

    ultra: str = Field(..., min_length=1)
    standard: str = Field(..., min_length=1)

    def key_for(self, tier: ModelTier) -> str:
        return self.ultra if tier is ModelTier.ULTRA else self.standard


class GenerationRequest(BaseModel):
    """Petición a despachar. `payload` es JSON opaco para el orquestador."""

    kind: GenerationKind
    payload: dict[str, Any] = Field(default_factory=dict)
    requires_captcha: bool = False
    requires_admission: bool = True
    tier_models: TierModels | None = Field(
        default=None,
        description="Si existe, el despachador aplica el fallback ultra → standard.",
    )
    service: str | None = Field(
        default=None,
        description="Servicio del proxy (`veo`/`imagen`); por defecto el del kind.",
    )

    @property
    def service_name(self) -> str:
        return self.service or self.kind.service

    @property
    def relative_path(self) -> str:
        return f"/api/{self.service_name}{self.kind.relative_path}"

    @classmethod
    def for_kind(
        cls,
        kind: GenerationKind,
        payload: dict[str, Any],
        *,
        tier_models: TierModels | None = None,
        service: str | None = None,
    ) -> "GenerationRequest":
        return cls(
            kind=kind,
            payload=payload,
            requires_captcha=kind.is_video,
            requires_admission=kind.is_generation_class,
            tier_models=tier_models,
            service=service,
        )


class AffinityPair(BaseModel):
    """Token + servidor que realmente produjeron un éxito."""

    model_config = ConfigDict(frozen=True)

    credential: Credential
    server: ServerEndpoint


class DispatchResult(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    affinity: AffinityPair
    model_key: str | None = None
    attempts: int = Field(default=1, ge=1)


class UploadResult(BaseModel):
    media_id: str = Field(..., min_length=1)
    affinity: AffinityPair


class ImageResult(BaseModel):
    encoded_image: str = Field(..., min_length=1)
    affinity: AffinityPair


class OperationHandle(BaseModel):
    """Operaciones en curso devueltas por el backend.

    Se construye solo desde el despachador y lleva el par de afinidad que la
    originó; el poller no acepta otro.
    """

    model_config = ConfigDict(frozen=True)

    operations: list[dict[str, Any]] = Field(default_factory=list)
    affinity: AffinityPair
    model_key: str | None = None


class StatusSnapshot(BaseModel):
    operations: list[dict[str, Any]] = Field(default_factory=list)
    state: OperationState = OperationState.PENDING
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state is not OperationState.PENDING


class ImageAsset(BaseModel):
    """Imagen de entrada (base64) compartible entre unidades de un lote."""

    base64: str = Field(..., min_length=1)
    mime_type: str = Field(default="image/png", min_length=1)
    caption: str = Field(default="subject")


class ClassifiedError(BaseModel):
    kind: str
    message: str
    user_message: str
    status_code: int | None = None


class BatchUnit(BaseModel):
    index: int = Field(..., ge=0)
    state: UnitState = UnitState.PENDING
    artifact: Any = None
    error: ClassifiedError | None = None
    affinity: AffinityPair | None = None


class UserContext(BaseModel):
    """Quién hace la petición: identidad, rol y clave CAPTCHA propia."""

    user_id: str = Field(..., min_length=1)
    username: str = Field(default="unknown")
    role: str = Field(default="user")
    captcha_key: str | None = None
    is_local_client: bool = False


class UserProfile(BaseModel):
    """Fila del almacén de perfiles remoto."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str | None = None
    personal_token: str | None = None
    captcha_key: str | None = None
    role: str | None = None
    entitlement_status: str | None = None
    entitlement_expires_at: datetime | None = None

    def has_active_entitlement(self, now: datetime | None = None) -> bool:
        if self.entitlement_status != "active" or self.entitlement_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires = self.entitlement_expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires > now
