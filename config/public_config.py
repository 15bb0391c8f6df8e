from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """APP_ROOT if set, `/app` inside the container image, else the working directory."""
    for candidate in (os.environ.get("APP_ROOT"), "/app"):
        if candidate and Path(candidate).exists():
            return Path(candidate).resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-secret settings for the sound design service. Read from the process
    environment, then `.env`; unknown keys are ignored.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    # Per-job snapshots, generated audio and debug trails live under <state_dir>/<job_id>/.
    # If unset, defaults to "<APP_ROOT>/data/jobs".
    state_dir: Path | None = Field(default=None, alias="SOUND_DESIGN_STATE_DIR")
    uploads_dir: Path | None = Field(default=None, alias="SOUND_DESIGN_UPLOADS_DIR")
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="SOUND_DESIGN_LOG_DIR"
    )

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- http ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3001, alias="PORT")
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")
    max_upload_mb: int = Field(default=500, alias="MAX_UPLOAD_MB")
    sse_poll_interval_sec: float = Field(default=0.5, alias="SSE_POLL_INTERVAL_SEC")
    sse_ping_sec: int = Field(default=15, alias="SSE_PING_SEC")

    # --- upstream (upload / story analysis / planning / spotting) retry policy ---
    upstream_retries: int = Field(default=3, alias="UPSTREAM_RETRIES")
    upstream_backoff_base_sec: float = Field(default=2.0, alias="UPSTREAM_BACKOFF_BASE_SEC")
    upstream_backoff_cap_sec: float = Field(default=30.0, alias="UPSTREAM_BACKOFF_CAP_SEC")

    # --- generation fan-out retry policy (per prompt variant) ---
    generation_retries: int = Field(default=2, alias="GENERATION_RETRIES")
    generation_backoff_base_sec: float = Field(default=1.0, alias="GENERATION_BACKOFF_BASE_SEC")
    generation_backoff_cap_sec: float = Field(default=8.0, alias="GENERATION_BACKOFF_CAP_SEC")

    # --- feature toggles ---
    action_spotting: bool = Field(default=True, alias="ACTION_SPOTTING")
    loudness_normalize: bool = Field(default=True, alias="LOUDNESS_NORMALIZE")
    debug_trail: bool = Field(default=True, alias="DEBUG_TRAIL")

    # "package.module:factory" returning a Collaborators bundle (AI analysis + generation).
    collaborators: str = Field(default="", alias="SOUND_DESIGN_COLLABORATORS")

    def resolved_state_dir(self) -> Path:
        if self.state_dir is not None:
            return Path(self.state_dir).resolve()
        return (Path(self.app_root) / "data" / "jobs").resolve()

    def resolved_uploads_dir(self) -> Path:
        if self.uploads_dir is not None:
            return Path(self.uploads_dir).resolve()
        return (Path(self.app_root) / "uploads").resolve()

    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in (self.cors_origins or "").split(",") if o.strip()]
