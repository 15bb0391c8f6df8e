from __future__ import annotations

from dataclasses import dataclass, replace
from importlib import import_module
from pathlib import Path
from typing import Any, Protocol

from sound_design_pipeline.jobs.cancel import CancelToken
from sound_design_pipeline.pipeline.schemas import (
    MediaRef,
    SoundDesignPlan,
    SpottedAction,
    StoryAnalysis,
)


class CollaboratorsNotConfigured(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class GeneratedAudio:
    actual_duration_s: float
    loop: bool = False


@dataclass(frozen=True, slots=True)
class LoudnessTarget:
    integrated_lufs: float
    true_peak_db: float = -2.0
    lra: float = 11.0


class MediaUploader(Protocol):
    async def upload(self, video_path: Path, cancel: CancelToken) -> MediaRef | dict[str, Any]: ...


class StoryAnalyzer(Protocol):
    async def analyze(
        self, media: MediaRef, cancel: CancelToken
    ) -> StoryAnalysis | dict[str, Any]: ...


class SoundDesignPlanner(Protocol):
    async def plan(
        self, media: MediaRef, story: StoryAnalysis, cancel: CancelToken
    ) -> SoundDesignPlan | dict[str, Any]: ...


class ActionSpotter(Protocol):
    async def spot(
        self, media: MediaRef, story: StoryAnalysis, cancel: CancelToken
    ) -> list[SpottedAction] | list[dict[str, Any]]: ...


class AudioGenerator(Protocol):
    """
    Must be safe to call again with the same output_path (a retry overwrites it).
    """

    async def generate(
        self, *, kind: str, prompt: str, duration_s: float, output_path: Path, loop: bool
    ) -> GeneratedAudio: ...


class LoudnessNormalizer(Protocol):
    async def normalize(self, input_path: Path, target: LoudnessTarget, output_path: Path) -> Path: ...


@dataclass(frozen=True, slots=True)
class Collaborators:
    analyzer: StoryAnalyzer
    planner: SoundDesignPlanner
    generator: AudioGenerator
    uploader: MediaUploader | None = None
    spotter: ActionSpotter | None = None
    normalizer: LoudnessNormalizer | None = None


def with_default_media(c: Collaborators, *, normalize: bool = True) -> Collaborators:
    """
    Fill the uploader/normalizer slots with the local ffmpeg-backed implementations.
    """
    from sound_design_pipeline.media.loudness import FfmpegLoudnessNormalizer
    from sound_design_pipeline.media.upload import LocalMediaUploader

    upd: dict[str, Any] = {}
    if c.uploader is None:
        upd["uploader"] = LocalMediaUploader()
    if c.normalizer is None and normalize:
        upd["normalizer"] = FfmpegLoudnessNormalizer()
    return replace(c, **upd) if upd else c


def load_collaborators(path: str, *, normalize: bool = True) -> Collaborators:
    """
    Import "package.module:factory" and call the zero-arg factory.
    """
    target = str(path or "").strip()
    if not target:
        raise CollaboratorsNotConfigured(
            "No collaborators configured (set SOUND_DESIGN_COLLABORATORS=package.module:factory)"
        )
    mod_name, _, attr = target.partition(":")
    if not mod_name or not attr:
        raise CollaboratorsNotConfigured(f"Invalid collaborators path: {target!r}")
    try:
        factory = getattr(import_module(mod_name), attr)
    except (ImportError, AttributeError) as ex:
        raise CollaboratorsNotConfigured(f"Cannot load collaborators {target!r}: {ex}") from ex
    bundle = factory()
    if not isinstance(bundle, Collaborators):
        raise CollaboratorsNotConfigured(
            f"Collaborators factory {target!r} returned {type(bundle).__name__}, expected Collaborators"
        )
    return with_default_media(bundle, normalize=normalize)
