from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from sound_design_pipeline.generation.mix import resolve_volume
from sound_design_pipeline.generation.requests import (
    PlannedGenerationRequest,
    TrackType,
    fallback_prompt_for,
)
from sound_design_pipeline.jobs.cancel import CancelToken, JobCancelled
from sound_design_pipeline.media.loudness import LOUDNORM_TARGETS
from sound_design_pipeline.ops.metrics import generation_outcomes
from sound_design_pipeline.pipeline.collaborators import (
    AudioGenerator,
    GeneratedAudio,
    LoudnessNormalizer,
)
from sound_design_pipeline.pipeline.schemas import Scene
from sound_design_pipeline.utils.io import ensure_dir
from sound_design_pipeline.utils.log import logger
from sound_design_pipeline.utils.retry import retry_async

ProgressCallback = Callable[[float, str], Any]


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    FAILED = "failed"


class GenerationFailed(RuntimeError):
    def __init__(self, request_id: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"generation failed for {request_id} after {attempts} attempt(s): {last_error}")
        self.request_id = request_id
        self.attempts = int(attempts)
        self.last_error = last_error


@dataclass(slots=True)
class GeneratedTrack:
    id: str
    kind: str
    file_path: str
    start_s: float
    requested_duration_s: float
    actual_duration_s: float
    loop: bool
    volume: float
    label: str = ""
    prompt: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "file_path": self.file_path,
            "start_s": self.start_s,
            "requested_duration_s": self.requested_duration_s,
            "actual_duration_s": self.actual_duration_s,
            "loop": self.loop,
            "volume": self.volume,
            "label": self.label,
            "prompt": self.prompt,
        }


@dataclass(slots=True)
class GenerationOutcome:
    request: PlannedGenerationRequest
    status: OutcomeStatus
    track: GeneratedTrack | None = None
    retry_count: int = 0
    fallback_prompt: str | None = None
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request.id,
            "type": self.request.kind.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "fallback_prompt": self.fallback_prompt,
            "error": self.error,
            "skipped": self.skipped,
            "track_id": self.track.id if self.track is not None else None,
        }


@dataclass(slots=True)
class TypeStats:
    planned: int = 0
    succeeded: int = 0
    fallback: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "planned": self.planned,
            "succeeded": self.succeeded,
            "fallback": self.fallback,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class GenerationReport:
    """
    Append-only outcome list; stats are always derived, never stored.
    """

    _outcomes: list[GenerationOutcome] = field(default_factory=list)

    def add(self, outcome: GenerationOutcome) -> None:
        self._outcomes.append(outcome)

    @property
    def outcomes(self) -> tuple[GenerationOutcome, ...]:
        return tuple(self._outcomes)

    def stats(self) -> dict[str, TypeStats]:
        out = {t.value: TypeStats() for t in TrackType}
        for o in self._outcomes:
            st = out[o.request.kind.value]
            st.planned += 1
            if o.status is OutcomeStatus.SUCCESS:
                st.succeeded += 1
                if o.skipped:
                    st.skipped += 1
            elif o.status is OutcomeStatus.FALLBACK:
                st.fallback += 1
            else:
                st.failed += 1
        return out

    def totals(self) -> TypeStats:
        tot = TypeStats()
        for st in self.stats().values():
            tot.planned += st.planned
            tot.succeeded += st.succeeded
            tot.fallback += st.fallback
            tot.failed += st.failed
            tot.skipped += st.skipped
        return tot

    def tracks(self) -> list[GeneratedTrack]:
        tracks = [o.track for o in self._outcomes if o.track is not None]
        return sorted(tracks, key=lambda t: (t.start_s, t.id))

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": {k: v.to_dict() for k, v in self.stats().items()},
            "totals": self.totals().to_dict(),
            "outcomes": [o.to_dict() for o in self._outcomes],
        }


def audio_path(audio_dir: Path, req: PlannedGenerationRequest) -> Path:
    return Path(audio_dir) / f"{req.kind.value}_{req.id}.mp3"


class FanOutRunner:
    """
    Runs every planned request concurrently and settles each into exactly one outcome.

    Per request: the primary prompt is tried with bounded retry; if that is exhausted and a
    distinct fallback prompt exists, the fallback gets the same bounded retry. Failures are
    always recovered into a `failed` outcome; they never cancel siblings.
    """

    def __init__(
        self,
        generator: AudioGenerator,
        *,
        audio_dir: Path,
        scenes: Sequence[Scene] = (),
        normalizer: LoudnessNormalizer | None = None,
        retries: int = 2,
        backoff_base: float = 1.0,
        backoff_cap: float = 8.0,
        jitter: bool = True,
        sleep: Callable[[float], Any] | None = None,
        progress_range: tuple[float, float] = (0.50, 0.98),
    ) -> None:
        self.generator = generator
        self.audio_dir = Path(audio_dir)
        self.scenes = list(scenes)
        self.normalizer = normalizer
        self.retries = int(retries)
        self.backoff_base = float(backoff_base)
        self.backoff_cap = float(backoff_cap)
        self.jitter = bool(jitter)
        self.sleep = sleep
        self.progress_range = progress_range

    async def run(
        self,
        requests: Sequence[PlannedGenerationRequest],
        *,
        cancel: CancelToken,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationReport:
        report = GenerationReport()
        total = len(requests)
        if total == 0:
            return report
        ensure_dir(self.audio_dir)
        lo, hi = self.progress_range

        tasks = [asyncio.create_task(self.generate_one(r, cancel=cancel)) for r in requests]
        done = 0
        failed = 0
        try:
            # Single consumer: completions are counted and reported in one place.
            for fut in asyncio.as_completed(tasks):
                outcome = await fut
                report.add(outcome)
                done += 1
                if outcome.status is OutcomeStatus.FAILED:
                    failed += 1
                if on_progress is not None:
                    msg = f"Generated {done}/{total} tracks"
                    if failed:
                        msg += f" ({failed} failed)"
                    on_progress(lo + (hi - lo) * (done / total), msg)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
            for t in tasks:
                with suppress(asyncio.CancelledError, Exception):
                    await t

        cancel.raise_if_cancelled()
        return report

    async def generate_one(
        self, req: PlannedGenerationRequest, *, cancel: CancelToken
    ) -> GenerationOutcome:
        """
        Settle one request. Never raises (except asyncio task cancellation): anything
        that goes wrong while generating, normalizing or reading the generator's result
        becomes a `failed` outcome for this request alone.
        """
        attempts = [0]
        try:
            return await self._settle(req, cancel, attempts)
        except Exception as ex:
            logger.exception(
                "generation_settle_failed", request_id=req.id, kind=req.kind.value, error=str(ex)
            )
            outcome = GenerationOutcome(
                request=req,
                status=OutcomeStatus.FAILED,
                retry_count=max(0, attempts[0] - 1),
                error=f"{type(ex).__name__}: {ex}",
            )
            self._count(outcome)
            return outcome

    async def _settle(
        self, req: PlannedGenerationRequest, cancel: CancelToken, attempts: list[int]
    ) -> GenerationOutcome:
        if req.skip:
            outcome = GenerationOutcome(
                request=req,
                status=OutcomeStatus.SUCCESS,
                track=self._track(req, file_path="", actual=0.0, loop=req.loop, volume=0.0),
                skipped=True,
            )
            self._count(outcome)
            return outcome

        out_path = audio_path(self.audio_dir, req)
        primary_err: BaseException | None = None
        fallback = None
        status = OutcomeStatus.SUCCESS
        try:
            try:
                audio = await self._attempt(req, req.prompt, out_path, cancel, attempts)
            except JobCancelled:
                raise
            except Exception as ex:
                primary_err = ex
                fallback = fallback_prompt_for(req)
                if fallback is None:
                    raise GenerationFailed(req.id, attempts[0], ex) from ex
                logger.info(
                    "generation_fallback",
                    request_id=req.id,
                    kind=req.kind.value,
                    error=str(ex),
                    fallback_prompt=fallback,
                )
                try:
                    audio = await self._attempt(req, fallback, out_path, cancel, attempts)
                except JobCancelled:
                    raise
                except Exception as ex2:
                    raise GenerationFailed(req.id, attempts[0], ex2) from ex2
                status = OutcomeStatus.FALLBACK
        except JobCancelled as ex:
            outcome = GenerationOutcome(
                request=req,
                status=OutcomeStatus.FAILED,
                retry_count=max(0, attempts[0] - 1),
                error=f"cancelled: {ex}",
            )
            self._count(outcome)
            return outcome
        except GenerationFailed as ex:
            logger.warning(
                "generation_failed",
                request_id=req.id,
                kind=req.kind.value,
                attempts=ex.attempts,
                error=str(ex.last_error),
            )
            outcome = GenerationOutcome(
                request=req,
                status=OutcomeStatus.FAILED,
                retry_count=max(0, attempts[0] - 1),
                fallback_prompt=fallback,
                error=str(ex.last_error or primary_err),
            )
            self._count(outcome)
            return outcome

        final_path = await self._normalize(req, out_path)
        volume = resolve_volume(req.kind.value, req.start_s, self.scenes, loudness=req.loudness)
        outcome = GenerationOutcome(
            request=req,
            status=status,
            track=self._track(
                req,
                file_path=str(final_path),
                actual=float(audio.actual_duration_s),
                loop=bool(audio.loop or req.loop),
                volume=volume,
                prompt=fallback if status is OutcomeStatus.FALLBACK else req.prompt,
            ),
            retry_count=max(0, attempts[0] - 1),
            fallback_prompt=fallback if status is OutcomeStatus.FALLBACK else None,
            error=str(primary_err) if primary_err is not None else None,
        )
        self._count(outcome)
        return outcome

    async def _attempt(
        self,
        req: PlannedGenerationRequest,
        prompt: str,
        out_path: Path,
        cancel: CancelToken,
        attempts: list[int],
    ) -> GeneratedAudio:
        async def _call() -> GeneratedAudio:
            attempts[0] += 1
            return await self.generator.generate(
                kind=req.kind.value,
                prompt=prompt,
                duration_s=req.duration_s,
                output_path=out_path,
                loop=req.loop,
            )

        def _on_retry(n: int, delay: float, ex: BaseException) -> None:
            logger.info(
                "generation_retry",
                request_id=req.id,
                attempt=n,
                delay_s=round(delay, 3),
                error=str(ex),
            )

        return await retry_async(
            _call,
            retries=self.retries,
            base=self.backoff_base,
            cap=self.backoff_cap,
            jitter=self.jitter,
            cancel=cancel,
            on_retry=_on_retry,
            sleep=self.sleep,
        )

    async def _normalize(self, req: PlannedGenerationRequest, raw: Path) -> Path:
        if self.normalizer is None:
            return raw
        target = LOUDNORM_TARGETS[req.kind.value]
        tmp = raw.with_name(f"{raw.stem}.norm{raw.suffix}")
        try:
            out = Path(await self.normalizer.normalize(raw, target, tmp))
            if out != raw:
                out.replace(raw)
        except Exception as ex:
            # keep the raw file
            logger.warning("loudness_normalize_failed", request_id=req.id, error=str(ex))
            with suppress(Exception):
                tmp.unlink(missing_ok=True)
        return raw

    def _track(
        self,
        req: PlannedGenerationRequest,
        *,
        file_path: str,
        actual: float,
        loop: bool,
        volume: float,
        prompt: str | None = None,
    ) -> GeneratedTrack:
        return GeneratedTrack(
            id=req.id,
            kind=req.kind.value,
            file_path=file_path,
            start_s=req.start_s,
            requested_duration_s=req.duration_s,
            actual_duration_s=actual,
            loop=loop,
            volume=volume,
            label=req.label,
            prompt=prompt if prompt is not None else req.prompt,
        )

    @staticmethod
    def _count(outcome: GenerationOutcome) -> None:
        with suppress(Exception):
            generation_outcomes.labels(
                kind=outcome.request.kind.value, status=outcome.status.value
            ).inc()
