from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Provider credentials for the analysis and generation collaborators. Values come
    from the environment or a local `.env.secrets`; they are only ever reported as
    SET/UNSET.
    """

    model_config = SettingsConfigDict(env_file=".env.secrets", env_file_encoding="utf-8", extra="ignore")

    # content understanding (story analysis / planning / spotting)
    gemini_api_key: SecretStr | None = Field(default=None, alias="GEMINI_API_KEY")
    # music / ambient / sfx generation
    elevenlabs_api_key: SecretStr | None = Field(default=None, alias="ELEVENLABS_API_KEY")
    # optional prompt rewriting
    openai_api_key: SecretStr | None = Field(default=None, alias="OPENAI_API_KEY")
