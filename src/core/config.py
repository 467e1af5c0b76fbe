"""Configuración del Core.

Centraliza variables de entorno (pydantic-settings) para que servicios,
adaptadores y CLI lean la misma configuración.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SERVER_POOL: tuple[str, ...] = tuple(
    f"https://s{n}.monoklix.com" for n in range(1, 13)
)


def get_user_config_dir() -> Path:
    """Directorio de configuración por usuario (cross-platform, sin dependencias)."""

    if sys.platform.startswith("win"):
        base = Path(os.environ.get("APPDATA", str(Path.home())))
        return base / "genrelay"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "genrelay"

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "genrelay"
    return Path.home() / ".config" / "genrelay"


def get_user_env_file() -> Path:
    return get_user_config_dir() / ".env"


def _parse_env_lines(text: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key:
            data[key] = value
    return data


def write_user_env_vars(values: dict[str, str]) -> Path:
    """Escribe/actualiza variables en el .env global del usuario."""

    env_path = get_user_env_file()
    env_path.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, str] = {}
    if env_path.exists():
        existing = _parse_env_lines(env_path.read_text(encoding="utf-8"))

    existing.update({k: v for k, v in values.items() if v is not None})

    lines = ["# genrelay user config (.env)"]
    for key in sorted(existing.keys()):
        lines.append(f"{key}={existing[key]}")
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return env_path


class AppSettings(BaseSettings):
    """Configuración central de la aplicación.

    Agrupa: transporte HTTP, pool de servidores proxy, admisión, CAPTCHA,
    almacén de perfiles y la identidad del usuario que usa la CLI.
    """

    model_config = SettingsConfigDict(
        env_prefix="GENRELAY_",
        extra="ignore",
        case_sensitive=False,
        # Orden: proyecto primero (dev), luego config global de usuario.
        env_file=(".env", str(get_user_env_file())),
        env_file_encoding="utf-8",
    )

    # Transporte
    http_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout por request hacia los proxies (segundos).",
    )
    user_agent: str = Field(
        default="genrelay/0.1",
        min_length=1,
        description="User-Agent enviado a los proxies.",
    )

    # Pool de servidores
    server_pool: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SERVER_POOL),
        description="URLs de los servidores proxy disponibles.",
    )
    default_server_url: str = Field(
        default=DEFAULT_SERVER_POOL[0],
        min_length=8,
        description="Servidor usado cuando el pool permitido queda vacío.",
    )
    local_server_url: str = Field(
        default="http://localhost:3001",
        min_length=8,
        description="Servidor local de desarrollo.",
    )
    local_proxy_url: str = Field(
        default="http://localhost:3000",
        min_length=8,
        description="Reverse proxy local; las rutas relativas se resuelven contra esta base.",
    )
    premium_server_url: str | None = Field(
        default="https://s12.monoklix.com",
        description="Servidor restringido a roles elevados.",
    )
    elevated_roles: list[str] = Field(
        default_factory=lambda: ["admin", "special_user", "special user"],
        description="Roles con acceso al servidor premium.",
    )
    local_client: bool = Field(
        default=False,
        description="True si el cliente corre en contexto local/desarrollo.",
    )

    # Admisión y lotes
    admission_cooldown_seconds: int = Field(
        default=10,
        ge=0,
        description="Ventana de cooldown solicitada al gate de admisión.",
    )
    batch_stagger_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Retraso entre lanzamientos de unidades de un lote (i × stagger).",
    )

    # CAPTCHA
    captcha_key_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="TTL de la clave CAPTCHA compartida.",
    )
    entitlement_ttl_seconds: float = Field(
        default=120.0,
        gt=0,
        description="TTL del flag de entitlement por usuario.",
    )
    captcha_project_id: str | None = Field(
        default=None,
        description="Project id por defecto para resolver el CAPTCHA.",
    )
    anticaptcha_base_url: str = Field(
        default="https://api.anti-captcha.com",
        min_length=8,
    )
    captcha_website_url: str = Field(
        default="https://labs.google/fx/tools/flow",
        min_length=8,
        description="Página protegida; el project id se añade como /project/<id>.",
    )
    captcha_website_key: str = Field(
        default="6LdsFiUsAAAAAIjVDZcuLhaHiDn5nnHVXVRQGeMV",
        min_length=1,
    )
    captcha_page_action: str = Field(default="FLOW_GENERATION", min_length=1)
    captcha_poll_interval_seconds: float = Field(default=3.0, gt=0)
    captcha_timeout_seconds: float = Field(default=120.0, gt=0)

    # Almacén de perfiles (PostgREST)
    profile_store_url: str | None = Field(
        default=None,
        description="Base URL del almacén de perfiles (p.ej. https://xyz.supabase.co).",
    )
    profile_store_api_key: str | None = Field(
        default=None,
        description="API key del almacén de perfiles.",
    )

    # Polling (lado llamador)
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    poll_timeout_seconds: float = Field(default=600.0, gt=0)

    # Identidad usada por la CLI
    user_id: str = Field(default="local", min_length=1)
    username: str = Field(default="unknown", min_length=1)
    role: str = Field(default="user", min_length=1)
    personal_token: str | None = Field(
        default=None,
        description="Token personal guardado localmente (caché entre sesiones).",
    )

    log_level: str = Field(default="INFO")

    @field_validator("server_pool", mode="before")
    @classmethod
    def _split_pool(cls, value: object) -> object:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value
