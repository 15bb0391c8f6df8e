from __future__ import annotations

import shutil
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.generation.requests import PlannedGenerationRequest, TrackType
from sound_design_pipeline.generation.runner import FanOutRunner, OutcomeStatus, audio_path
from sound_design_pipeline.jobs.cancel import CancelToken
from sound_design_pipeline.jobs.models import new_id
from sound_design_pipeline.pipeline.schemas import Scene
from sound_design_pipeline.utils.log import logger
from sound_design_pipeline.web.deps import get_collaborators, get_registry, require_job

router = APIRouter()

_AUDIO_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
}
_LABEL_PREFIX = {"sfx": "SFX", "ambient": "Ambient"}


class RegenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    track_id: str = Field(alias="trackId", min_length=1)
    prompt: str = Field(min_length=1)
    duration_s: float = Field(alias="durationSec", gt=0)


def _find_track(result: dict | None, track_id: str) -> dict | None:
    for t in (result or {}).get("tracks") or []:
        if str(t.get("id")) == str(track_id):
            return t
    return None


@router.get("/api/audio/{job_id}/{track_id}")
async def get_audio(request: Request, job_id: str, track_id: str):
    registry = get_registry(request)
    job = require_job(registry, job_id)
    if not job.result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job has no results yet")
    track = _find_track(job.result, track_id)
    if track is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Track not found")
    fp = str(track.get("file_path") or "")
    path = Path(fp) if fp else None
    # Only serve files that live inside this job's directory.
    job_root = registry.job_dir(job.id).resolve()
    if path is None or not path.is_file() or job_root not in path.resolve().parents:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audio file not found on disk")
    ext = path.suffix.lower()
    return FileResponse(
        str(path),
        media_type=_AUDIO_TYPES.get(ext, "audio/mpeg"),
        filename=f"{track_id}{ext}",
        content_disposition_type="inline",
    )


@router.post("/api/regenerate-sfx")
async def regenerate_sfx(request: Request, body: RegenerateRequest):
    registry = get_registry(request)
    collaborators = get_collaborators(request)
    job = registry.get_job(body.job_id)
    if job is None or not job.result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Job not found or has no result"
        )
    track = _find_track(job.result, body.track_id)
    if track is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Track not found")
    kind = str(track.get("type") or "")
    if kind not in (TrackType.SFX.value, TrackType.AMBIENT.value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only sfx and ambient tracks can be regenerated",
        )

    s = get_settings()
    scenes = [Scene.model_validate(sc) for sc in ((job.result.get("plan") or {}).get("scenes") or [])]
    audio_dir = registry.job_dir(job.id) / "audio"
    # Generate beside the stored file; it is only replaced once the new one is complete.
    staging = audio_dir / f".regen-{new_id()}"
    runner = FanOutRunner(
        collaborators.generator,
        audio_dir=staging,
        scenes=scenes,
        normalizer=collaborators.normalizer,
        retries=s.generation_retries,
        backoff_base=s.generation_backoff_base_sec,
        backoff_cap=s.generation_backoff_cap_sec,
    )
    req = PlannedGenerationRequest(
        id=str(body.track_id),
        kind=TrackType(kind),
        prompt=body.prompt.strip(),
        start_s=float(track.get("start_s") or 0.0),
        duration_s=float(body.duration_s),
        loop=bool(track.get("loop")),
        label=str(track.get("label") or ""),
    )
    staging.mkdir(parents=True, exist_ok=True)
    try:
        outcome = await runner.generate_one(req, cancel=CancelToken())
        if outcome.status is OutcomeStatus.FAILED or outcome.track is None:
            logger.warning("regenerate_failed", job_id=job.id, track_id=req.id, error=outcome.error)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Regeneration failed: {outcome.error}",
            )
        staged = Path(outcome.track.file_path)
        final_path = audio_path(audio_dir, req).with_suffix(staged.suffix or ".mp3")
        staged.replace(final_path)
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    used_prompt = outcome.track.prompt
    updated = registry.update_track(
        job.id,
        req.id,
        file_path=str(final_path),
        actual_duration_s=outcome.track.actual_duration_s,
        requested_duration_s=req.duration_s,
        loop=outcome.track.loop,
        prompt=used_prompt,
        label=f"{_LABEL_PREFIX[kind]}: {used_prompt[:50]}",
    )
    logger.info("track_regenerated", job_id=job.id, track_id=req.id, status=outcome.status.value)
    return {
        "trackId": req.id,
        "actualDurationSec": outcome.track.actual_duration_s,
        "loop": outcome.track.loop,
        "status": outcome.status.value,
        "fallbackPrompt": outcome.fallback_prompt,
        "track": updated,
    }
