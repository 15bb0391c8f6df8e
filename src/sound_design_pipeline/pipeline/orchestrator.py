from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypeVar

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.generation.requests import build_generation_requests
from sound_design_pipeline.generation.runner import FanOutRunner, GenerationReport
from sound_design_pipeline.jobs.cancel import CancelToken, JobCancelled
from sound_design_pipeline.jobs.events import ProgressPayload
from sound_design_pipeline.jobs.models import Job, Stage
from sound_design_pipeline.jobs.store import RESTART_ERROR, JobRegistry
from sound_design_pipeline.ops.metrics import stage_seconds, time_hist
from sound_design_pipeline.pipeline import trail as trail_files
from sound_design_pipeline.pipeline.collaborators import Collaborators
from sound_design_pipeline.pipeline.schemas import (
    MediaRef,
    SoundDesignPlan,
    SpottedAction,
    StoryAnalysis,
)
from sound_design_pipeline.pipeline.stages import COMPLETE_PROGRESS, stage_progress
from sound_design_pipeline.pipeline.trail import DebugTrail
from sound_design_pipeline.utils.log import logger, set_job_id
from sound_design_pipeline.utils.retry import retry_async

T = TypeVar("T")

SHUTDOWN_MESSAGE = "Server shutting down"

CONTENT_TYPES = ("youtube", "podcast", "short-form", "film", "commercial", "streaming")


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    user_intent: str = ""
    include_sfx: bool = True
    content_type: str = "film"
    debug_trail: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> PipelineOptions:
        d = dict(d or {})
        ct = str(d.get("content_type") or "film")
        return cls(
            user_intent=str(d.get("user_intent") or ""),
            include_sfx=bool(d.get("include_sfx", True)),
            content_type=ct if ct in CONTENT_TYPES else "film",
            debug_trail=bool(d.get("debug_trail", True)),
        )


def final_message(report: GenerationReport) -> str:
    tot = report.totals()
    produced = tot.succeeded - tot.skipped + tot.fallback
    msg = f"Sound design complete: {produced} tracks generated"
    if tot.fallback or tot.failed:
        msg += f" ({tot.fallback} used fallback prompts, {tot.failed} failed)"
    return msg


class PipelineOrchestrator:
    """
    Fixed stage sequence for one job:

        uploading -> story_analysis -> sound_design_planning -> [action_spotting]
        -> generating -> complete

    Upstream calls are singular and retried with the upstream policy; any failure they
    surface ends the job in `error`. Cancellation is observed between stages and before
    each external call, and ends the job in `cancelled`.
    """

    def __init__(
        self,
        registry: JobRegistry,
        collaborators: Collaborators,
        *,
        upstream_retries: int = 3,
        upstream_backoff_base: float = 2.0,
        upstream_backoff_cap: float = 30.0,
        generation_retries: int = 2,
        generation_backoff_base: float = 1.0,
        generation_backoff_cap: float = 8.0,
        action_spotting: bool = True,
        jitter: bool = True,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.registry = registry
        self.collaborators = collaborators
        self.upstream_retries = int(upstream_retries)
        self.upstream_backoff_base = float(upstream_backoff_base)
        self.upstream_backoff_cap = float(upstream_backoff_cap)
        self.generation_retries = int(generation_retries)
        self.generation_backoff_base = float(generation_backoff_base)
        self.generation_backoff_cap = float(generation_backoff_cap)
        self.action_spotting = bool(action_spotting)
        self.jitter = bool(jitter)
        self.sleep = sleep

    @classmethod
    def from_settings(cls, registry: JobRegistry, collaborators: Collaborators) -> PipelineOrchestrator:
        s = get_settings()
        return cls(
            registry,
            collaborators,
            upstream_retries=s.upstream_retries,
            upstream_backoff_base=s.upstream_backoff_base_sec,
            upstream_backoff_cap=s.upstream_backoff_cap_sec,
            generation_retries=s.generation_retries,
            generation_backoff_base=s.generation_backoff_base_sec,
            generation_backoff_cap=s.generation_backoff_cap_sec,
            action_spotting=s.action_spotting,
        )

    async def run(self, job_id: str) -> None:
        """
        Drive one job to a terminal event. Never raises for pipeline failures; only
        asyncio task cancellation propagates (after a shutdown error event is recorded).
        """
        job = self.registry.get_job(job_id)
        if job is None:
            logger.warning("pipeline_unknown_job", job_id=str(job_id))
            return
        cancel = job.cancel_token or CancelToken.already_cancelled("missing token")
        options = PipelineOptions.from_dict(job.options)
        trail = DebugTrail(self.registry.job_dir(job.id) / "debug", enabled=options.debug_trail)
        set_job_id(job.id)
        logger.info("pipeline_started", job_id=job.id, options=options.to_dict())
        try:
            await self._run_stages(job, cancel, options, trail)
        except JobCancelled:
            trail.note(Stage.CANCELLED.value, "cancelled")
            self._emit(
                job.id,
                Stage.CANCELLED,
                self.registry.last_progress(job.id),
                "Pipeline cancelled",
            )
            logger.info("pipeline_cancelled", job_id=job.id)
        except asyncio.CancelledError:
            # Task torn down by process shutdown, not by the user.
            trail.note(Stage.ERROR.value, SHUTDOWN_MESSAGE)
            self._emit(
                job.id,
                Stage.ERROR,
                self.registry.last_progress(job.id),
                SHUTDOWN_MESSAGE,
                error=RESTART_ERROR,
            )
            logger.warning("pipeline_interrupted", job_id=job.id)
            raise
        except Exception as ex:
            trail.note(Stage.ERROR.value, f"failed: {ex}")
            logger.exception("pipeline_failed", job_id=job.id, error=str(ex))
            self._emit(
                job.id,
                Stage.ERROR,
                self.registry.last_progress(job.id),
                f"Pipeline failed: {ex}",
                error=str(ex),
            )
        finally:
            set_job_id(None)

    async def _run_stages(
        self, job: Job, cancel: CancelToken, options: PipelineOptions, trail: DebugTrail
    ) -> None:
        c = self.collaborators
        job_id = job.id

        # --- uploading ---
        self._enter(job_id, Stage.UPLOADING, "Uploading video...", cancel, trail)
        uploader = c.uploader
        if uploader is None:
            from sound_design_pipeline.media.upload import LocalMediaUploader

            uploader = LocalMediaUploader()
        with time_hist(stage_seconds.labels(stage=Stage.UPLOADING.value)):
            raw_media = await self._upstream(
                "upload", lambda: uploader.upload(Path(job.video_path), cancel), cancel
            )
        media = MediaRef.model_validate(raw_media)
        media = media.model_copy(
            update={
                "meta": {
                    **media.meta,
                    "user_intent": options.user_intent,
                    "content_type": options.content_type,
                }
            }
        )
        trail.write(trail_files.UPLOAD, media.model_dump(mode="json"))

        # --- story analysis ---
        self._enter(job_id, Stage.STORY_ANALYSIS, "Analyzing story and scenes...", cancel, trail)
        with time_hist(stage_seconds.labels(stage=Stage.STORY_ANALYSIS.value)):
            raw_story = await self._upstream(
                "story_analysis", lambda: c.analyzer.analyze(media, cancel), cancel
            )
        story = StoryAnalysis.model_validate(raw_story)
        trail.write(trail_files.STORY_ANALYSIS, story.model_dump(mode="json"))
        self._emit(
            job_id,
            Stage.STORY_ANALYSIS,
            stage_progress(Stage.STORY_ANALYSIS, 0.9),
            f"Found {len(story.beats)} story beats, {len(story.speech_segments)} speech segments",
        )

        # --- planning ---
        self._enter(
            job_id, Stage.SOUND_DESIGN_PLANNING, "Planning sound design...", cancel, trail
        )
        with time_hist(stage_seconds.labels(stage=Stage.SOUND_DESIGN_PLANNING.value)):
            raw_plan = await self._upstream(
                "sound_design_planning", lambda: c.planner.plan(media, story, cancel), cancel
            )
        plan = SoundDesignPlan.model_validate(raw_plan)
        trail.write(trail_files.SOUND_DESIGN_PLAN, plan.model_dump(mode="json"))
        self._emit(
            job_id,
            Stage.SOUND_DESIGN_PLANNING,
            stage_progress(Stage.SOUND_DESIGN_PLANNING, 0.9),
            f"Planned {len(plan.scenes)} scenes, {len(plan.music_segments)} music and "
            f"{len(plan.ambient_segments)} ambient segments",
        )

        # --- action spotting (optional) ---
        actions: list[SpottedAction] = []
        spotter = c.spotter
        if options.include_sfx and self.action_spotting and spotter is not None:
            self._enter(job_id, Stage.ACTION_SPOTTING, "Spotting on-screen actions...", cancel, trail)
            with time_hist(stage_seconds.labels(stage=Stage.ACTION_SPOTTING.value)):
                raw_actions = await self._upstream(
                    "action_spotting", lambda: spotter.spot(media, story, cancel), cancel
                )
            actions = [SpottedAction.model_validate(a) for a in (raw_actions or [])]
            trail.write(
                trail_files.ACTION_SPOTTING, [a.model_dump(mode="json") for a in actions]
            )
        else:
            trail.note(Stage.ACTION_SPOTTING.value, "skipped")

        # --- generating ---
        requests = build_generation_requests(plan, actions)
        trail.write(trail_files.GENERATION_REQUESTS, [r.to_dict() for r in requests])
        self._enter(
            job_id, Stage.GENERATING, f"Generating {len(requests)} audio tracks...", cancel, trail
        )
        runner = FanOutRunner(
            c.generator,
            audio_dir=self.registry.job_dir(job_id) / "audio",
            scenes=plan.scenes,
            normalizer=c.normalizer,
            retries=self.generation_retries,
            backoff_base=self.generation_backoff_base,
            backoff_cap=self.generation_backoff_cap,
            jitter=self.jitter,
            sleep=self.sleep,
        )
        with time_hist(stage_seconds.labels(stage=Stage.GENERATING.value)):
            report = await runner.run(
                requests,
                cancel=cancel,
                on_progress=lambda p, m: self._emit(job_id, Stage.GENERATING, p, m),
            )
        trail.write(trail_files.GENERATION_REPORT, report.to_dict())
        cancel.raise_if_cancelled()

        # --- complete ---
        msg = final_message(report)
        result = {
            "media": media.model_dump(mode="json"),
            "analysis": story.model_dump(mode="json"),
            "plan": plan.model_dump(mode="json"),
            "actions": [a.model_dump(mode="json") for a in actions],
            "tracks": [t.to_dict() for t in report.tracks()],
            "report": report.to_dict(),
        }
        trail.note(Stage.COMPLETE.value, msg)
        self._emit(job_id, Stage.COMPLETE, COMPLETE_PROGRESS, msg, result=result)
        logger.info("pipeline_complete", job_id=job_id, totals=report.totals().to_dict())

    def _enter(
        self, job_id: str, stage: Stage, message: str, cancel: CancelToken, trail: DebugTrail
    ) -> None:
        cancel.raise_if_cancelled()
        trail.note(stage.value, message)
        self._emit(job_id, stage, stage_progress(stage), message)

    def _emit(
        self,
        job_id: str,
        stage: Stage,
        progress: float,
        message: str,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self.registry.add_event(
            job_id,
            ProgressPayload(
                stage=stage.value,
                progress=float(progress),
                message=message,
                result=result,
                error=error,
            ),
        )

    async def _upstream(
        self, name: str, fn: Callable[[], Awaitable[T]], cancel: CancelToken
    ) -> T:
        def _on_retry(n: int, delay: float, ex: BaseException) -> None:
            logger.warning(
                "upstream_retry", call=name, attempt=n, delay_s=round(delay, 3), error=str(ex)
            )

        return await retry_async(
            fn,
            retries=self.upstream_retries,
            base=self.upstream_backoff_base,
            cap=self.upstream_backoff_cap,
            jitter=self.jitter,
            cancel=cancel,
            on_retry=_on_retry,
            sleep=self.sleep,
        )
