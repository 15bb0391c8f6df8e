from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from pathlib import Path
from typing import Any

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse  # type: ignore

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.jobs.admission import ConflictError
from sound_design_pipeline.jobs.events import parse_cursor
from sound_design_pipeline.jobs.models import new_id
from sound_design_pipeline.jobs.store import JobRegistry
from sound_design_pipeline.pipeline.orchestrator import CONTENT_TYPES, PipelineOptions
from sound_design_pipeline.utils.io import ensure_dir
from sound_design_pipeline.utils.log import logger
from sound_design_pipeline.web.deps import (
    get_collaborators,
    get_orchestrator,
    get_registry,
    require_job,
    spawn,
)

router = APIRouter()

ALLOWED_VIDEO_MIME = {
    "video/mp4",
    "video/quicktime",
    "video/webm",
    "video/x-msvideo",
    "video/mpeg",
}
_MIME_EXT = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "video/x-msvideo": ".avi",
    "video/mpeg": ".mpg",
}
_CHUNK = 1024 * 1024


def _conflict(active_job_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "A job is already in progress", "activeJobId": active_job_id},
    )


def _form_bool(v: str | None, default: bool) -> bool:
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip().lower() not in {"0", "false", "no", "off"}


async def _save_upload(upload: UploadFile, dest: Path, *, max_bytes: int) -> int:
    ensure_dir(dest.parent)
    written = 0
    try:
        with dest.open("wb") as f:
            while True:
                chunk = await upload.read(_CHUNK)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(
                        status_code=status.HTTP_413_CONTENT_TOO_LARGE,
                        detail=f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.",
                    )
                f.write(chunk)
    except BaseException:
        with suppress(Exception):
            dest.unlink(missing_ok=True)
        raise
    return written


@router.post("/api/analyze")
async def analyze(
    request: Request,
    video: UploadFile = File(...),
    userIntent: str = Form(""),  # noqa: N803
    includeSfx: str | None = Form(None),  # noqa: N803
    contentType: str | None = Form(None),  # noqa: N803
):
    registry = get_registry(request)
    get_collaborators(request)

    active = registry.active_job_id
    if active is not None:
        return _conflict(active)

    mime = str(video.content_type or "").split(";")[0].strip().lower()
    if mime not in ALLOWED_VIDEO_MIME:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported file type: {mime or 'unknown'}",
        )
    ct = (contentType or "").strip()
    if ct and ct not in CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid contentType: {ct}"
        )

    s = get_settings()
    job_id = new_id()
    ext = Path(video.filename or "").suffix.lower() or _MIME_EXT.get(mime, ".mp4")
    dest = Path(s.public.resolved_uploads_dir()) / f"{job_id}{ext}"
    size = await _save_upload(video, dest, max_bytes=int(s.max_upload_mb) * 1024 * 1024)

    options = PipelineOptions(
        user_intent=str(userIntent or "").strip(),
        include_sfx=_form_bool(includeSfx, True),
        content_type=ct or "film",
        debug_trail=bool(s.debug_trail),
    )
    try:
        registry.create_job(job_id, str(dest), options=options.to_dict())
    except ConflictError as ex:
        with suppress(Exception):
            dest.unlink(missing_ok=True)
        return _conflict(ex.active_job_id)

    spawn(request, get_orchestrator(request).run(job_id))
    logger.info("job_submitted", job_id=job_id, bytes=size, mime=mime)
    return {"jobId": job_id}


async def stream_job_events(
    registry: JobRegistry,
    job_id: str,
    cursor: str | int | None,
    *,
    poll_interval: float = 0.5,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Replay every event after `cursor`, then follow live appends until the job is terminal.

    Status is sampled before each fetch: a terminal status implies its terminal event is
    already in the log, so the final fetch cannot miss it.
    """
    next_idx = parse_cursor(cursor)
    while True:
        job = registry.get_job(job_id)
        if job is None:
            return
        running = job.is_running
        for ev in registry.events_after(job_id, next_idx - 1):
            yield {"id": ev.id, "data": json.dumps(ev.data.to_dict())}
            next_idx = ev.index + 1
        if not running:
            return
        if is_disconnected is not None and await is_disconnected():
            return
        await asyncio.sleep(poll_interval)


@router.get("/api/status/{job_id}")
async def job_status(request: Request, job_id: str):
    registry = get_registry(request)
    require_job(registry, job_id)
    cursor = request.headers.get("last-event-id") or request.query_params.get("lastEventId")
    s = get_settings()
    gen = stream_job_events(
        registry,
        job_id,
        cursor,
        poll_interval=float(s.sse_poll_interval_sec),
        is_disconnected=request.is_disconnected,
    )
    return EventSourceResponse(gen, ping=int(s.sse_ping_sec))


@router.post("/api/cancel/{job_id}")
async def cancel(request: Request, job_id: str):
    registry = get_registry(request)
    job = require_job(registry, job_id)
    if not job.is_running:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Job is already {job.status.value}"
        )
    if not registry.cancel_job(job_id):
        # Finished between the check and the cancel.
        latest = require_job(registry, job_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Job is already {latest.status.value}"
        )
    return {"message": "Job cancelled successfully"}


@router.get("/api/jobs/{job_id}")
async def get_job(request: Request, job_id: str):
    registry = get_registry(request)
    job = require_job(registry, job_id)
    out = job.summary()
    out["result"] = job.result
    out["options"] = dict(job.options)
    return out


@router.get("/api/jobs")
async def list_jobs(request: Request):
    registry = get_registry(request)
    return {"jobs": [j.summary() for j in registry.list_jobs()], "activeJobId": registry.active_job_id}
