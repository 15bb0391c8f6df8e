from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from fastapi import HTTPException, Request, status

from sound_design_pipeline.jobs.models import Job
from sound_design_pipeline.jobs.store import JobRegistry
from sound_design_pipeline.pipeline.collaborators import Collaborators
from sound_design_pipeline.pipeline.orchestrator import PipelineOrchestrator


def get_registry(request: Request) -> JobRegistry:
    reg = getattr(request.app.state, "registry", None)
    if reg is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Not ready")
    return reg


def get_collaborators(request: Request) -> Collaborators:
    c = getattr(request.app.state, "collaborators", None)
    if c is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sound design collaborators are not configured",
        )
    return c


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        orch = PipelineOrchestrator.from_settings(get_registry(request), get_collaborators(request))
        request.app.state.orchestrator = orch
    return orch


def require_job(registry: JobRegistry, job_id: str) -> Job:
    job = registry.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def spawn(request: Request, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """
    Start a background task owned by the app; lifespan shutdown cancels leftovers.
    """
    tasks: set[asyncio.Task] = request.app.state.tasks
    t = asyncio.create_task(coro)
    tasks.add(t)
    t.add_done_callback(tasks.discard)
    return t
