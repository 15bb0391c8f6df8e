from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.jobs.snapshot import JobSnapshotStore
from sound_design_pipeline.jobs.store import JobRegistry
from sound_design_pipeline.ops.metrics import REGISTRY
from sound_design_pipeline.pipeline.collaborators import (
    Collaborators,
    CollaboratorsNotConfigured,
    load_collaborators,
)
from sound_design_pipeline.pipeline.orchestrator import PipelineOrchestrator
from sound_design_pipeline.utils.log import logger
from sound_design_pipeline.web.middleware import log_requests, request_context_middleware
from sound_design_pipeline.web.routes_audio import router as audio_router
from sound_design_pipeline.web.routes_jobs import router as jobs_router


def _load_default_collaborators() -> Collaborators | None:
    s = get_settings()
    try:
        return load_collaborators(s.collaborators, normalize=bool(s.loudness_normalize))
    except CollaboratorsNotConfigured as ex:
        logger.warning("collaborators_not_configured", error=str(ex))
        return None


def create_app(
    *,
    registry: JobRegistry | None = None,
    collaborators: Collaborators | None = None,
    orchestrator: PipelineOrchestrator | None = None,
) -> FastAPI:
    """
    Build the HTTP app. Tests inject a registry/collaborators/orchestrator; production
    loads them from settings during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = get_settings()
        reg = registry
        if reg is None:
            reg = JobRegistry(JobSnapshotStore(s.public.resolved_state_dir()))
            reg.recover()
        collab = collaborators if collaborators is not None else _load_default_collaborators()
        app.state.registry = reg
        app.state.collaborators = collab
        app.state.orchestrator = orchestrator
        app.state.tasks = set()
        logger.info(
            "server_started",
            state_dir=str(reg.snapshots.root),
            collaborators=bool(collab),
        )
        try:
            yield
        finally:
            tasks = list(app.state.tasks)
            for t in tasks:
                t.cancel()
            if tasks:
                with suppress(Exception):
                    await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("server_stopped", cancelled_tasks=len(tasks))

    app = FastAPI(title="sound design pipeline", lifespan=lifespan)

    s = get_settings()
    origins = s.cors_origin_list()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Last-Event-ID", "X-Request-ID"],
    )
    # Added last so request_id is bound before log_requests runs.
    app.middleware("http")(log_requests)
    app.middleware("http")(request_context_middleware)

    app.include_router(jobs_router)
    app.include_router(audio_router)

    @app.get("/api/health")
    async def health(request: Request):
        reg = getattr(request.app.state, "registry", None)
        return {
            "ok": True,
            "activeJobId": reg.active_job_id if reg is not None else None,
            "collaborators": getattr(request.app.state, "collaborators", None) is not None,
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
