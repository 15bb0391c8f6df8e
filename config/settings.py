from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

PROVIDER_KEYS = ("gemini_api_key", "elevenlabs_api_key")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Public and secret config behind one attribute namespace. A name defined on both
    resolves to the secret side.
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if name in SecretConfig.model_fields:
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()

    def missing_provider_keys(self) -> list[str]:
        return [k.upper() for k in PROVIDER_KEYS if not _is_set(getattr(self.secret, k))]


def _is_set(v: Any) -> bool:
    if isinstance(v, SecretStr):
        return bool(v.get_secret_value())
    return v is not None and bool(str(v).strip())


def is_production() -> bool:
    env = os.environ.get("ENV") or os.environ.get("APP_ENV") or ""
    return env.strip().lower() in {"prod", "production"}


def _check(s: Settings) -> None:
    if is_production():
        origins = s.cors_origin_list()
        if not origins or any("*" in o for o in origins):
            raise ConfigError("CORS_ORIGINS must list explicit origins when ENV=production")
        if not str(s.public.collaborators or "").strip():
            raise ConfigError("SOUND_DESIGN_COLLABORATORS must be set when ENV=production")


def get_safe_config_report() -> dict[str, Any]:
    """
    Effective configuration with every secret reduced to SET/UNSET. Paths are
    reported resolved so `sound-design config` shows where jobs actually land.
    """
    s = get_settings()
    public = {k: (str(v) if isinstance(v, Path) else v) for k, v in s.public.model_dump().items()}
    public["state_dir"] = str(s.public.resolved_state_dir())
    public["uploads_dir"] = str(s.public.resolved_uploads_dir())
    secrets = {
        k: "SET" if _is_set(getattr(s.secret, k, None)) else "UNSET"
        for k in sorted(SecretConfig.model_fields)
    }
    return {"public": public, "secrets": secrets, "missing_provider_keys": s.missing_provider_keys()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _check(s)
    return s
