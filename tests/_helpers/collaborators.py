from __future__ import annotations

import asyncio
from pathlib import Path

from sound_design_pipeline.jobs.cancel import CancelToken
from sound_design_pipeline.pipeline.collaborators import Collaborators, GeneratedAudio
from sound_design_pipeline.pipeline.schemas import (
    AmbientSegment,
    MediaRef,
    MusicSegment,
    Scene,
    SoundDesignPlan,
    SpottedAction,
    StoryAnalysis,
    StoryBeat,
)
from sound_design_pipeline.utils.retry import TransientError


async def no_sleep(_delay: float) -> None:
    return None


class StatusError(RuntimeError):
    def __init__(self, msg: str, status_code: int) -> None:
        super().__init__(msg)
        self.status_code = status_code


def three_scene_plan() -> SoundDesignPlan:
    return SoundDesignPlan(
        scenes=[
            Scene(start_s=0, end_s=10, description="chase", dialogue=False, music_level="high"),
            Scene(start_s=10, end_s=20, description="argument", dialogue=True, music_level="high"),
            Scene(start_s=20, end_s=30, description="aftermath", dialogue=False, music_level="off"),
        ],
        music_segments=[
            MusicSegment(start_s=0, end_s=10, prompt="driving orchestral chase, brass stabs, taiko"),
            MusicSegment(start_s=20, end_s=30, prompt="quiet piano", skip=True),
        ],
        ambient_segments=[
            AmbientSegment(
                start_s=10, end_s=20, prompt="city street at night, distant traffic", loudness="medium"
            ),
        ],
    )


def four_actions() -> list[SpottedAction]:
    return [
        SpottedAction(time_s=2, duration_s=1, description="car door slams shut"),
        SpottedAction(time_s=12, duration_s=0.5, description="glass shatters on tile floor"),
        SpottedAction(time_s=22, duration_s=2, description="footsteps on gravel", category="soft"),
        SpottedAction(time_s=30, duration_s=1, description="phone buzzes on table"),
    ]


class FakeUploader:
    def __init__(self) -> None:
        self.calls = 0

    async def upload(self, video_path: Path, cancel: CancelToken) -> MediaRef:
        self.calls += 1
        return MediaRef(uri=Path(video_path).resolve().as_uri(), duration_s=30.0)


class FakeAnalyzer:
    def __init__(self, *, fail_times: int = 0, error: Exception | None = None) -> None:
        self.fail_times = fail_times
        self.error = error
        self.calls = 0

    async def analyze(self, media: MediaRef, cancel: CancelToken) -> StoryAnalysis:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.calls <= self.fail_times:
            raise TransientError("503 from analysis backend")
        return StoryAnalysis(
            summary="A chase ends in an argument.",
            beats=[StoryBeat(start_s=0, end_s=10, description="chase", significance="major")],
            duration_s=30.0,
        )


class FakePlanner:
    def __init__(self, plan: SoundDesignPlan | dict | None = None, *, gate: asyncio.Event | None = None) -> None:
        self.plan_value = plan if plan is not None else three_scene_plan()
        self.gate = gate
        self.calls = 0

    async def plan(self, media: MediaRef, story: StoryAnalysis, cancel: CancelToken):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.plan_value


class FakeSpotter:
    def __init__(self, actions: list[SpottedAction] | None = None) -> None:
        self.actions = actions if actions is not None else four_actions()
        self.calls = 0

    async def spot(self, media: MediaRef, story: StoryAnalysis, cancel: CancelToken):
        self.calls += 1
        return list(self.actions)


class FakeGenerator:
    """
    Writes a few bytes per call. Prompts in `always_fail` fail every time; prompts in
    `flaky` fail that many times before succeeding.
    """

    def __init__(
        self,
        *,
        always_fail: set[str] | None = None,
        flaky: dict[str, int] | None = None,
        error_factory=None,
    ) -> None:
        self.always_fail = set(always_fail or ())
        self.flaky = dict(flaky or {})
        self.error_factory = error_factory or (lambda p: TransientError(f"429 rate limit for {p!r}"))
        self.calls: list[dict] = []

    async def generate(
        self, *, kind: str, prompt: str, duration_s: float, output_path: Path, loop: bool
    ) -> GeneratedAudio:
        self.calls.append({"kind": kind, "prompt": prompt, "duration_s": duration_s})
        await asyncio.sleep(0)
        if prompt in self.always_fail:
            raise self.error_factory(prompt)
        if self.flaky.get(prompt, 0) > 0:
            self.flaky[prompt] -= 1
            raise self.error_factory(prompt)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(b"ID3fake-audio")
        return GeneratedAudio(actual_duration_s=round(duration_s * 0.9, 3), loop=loop)

    def prompts(self) -> list[str]:
        return [c["prompt"] for c in self.calls]


def make_collaborators(**overrides) -> Collaborators:
    parts = {
        "uploader": FakeUploader(),
        "analyzer": FakeAnalyzer(),
        "planner": FakePlanner(),
        "spotter": FakeSpotter(),
        "generator": FakeGenerator(),
        "normalizer": None,
    }
    parts.update(overrides)
    return Collaborators(**parts)
