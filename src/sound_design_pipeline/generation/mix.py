"""
Scene-aware playback gain for generated layers.

A fixed rule table stands in for a real ducking/mixing stage: when music, ambience and
effects are summed, these gains keep dialogue intelligible and avoid clipping. The
values are regression-tested; change them only together with the tests.
"""

from __future__ import annotations

from collections.abc import Sequence

from sound_design_pipeline.pipeline.schemas import Scene

DEFAULT_SCENE = Scene(start_s=0.0, end_s=0.0, dialogue=False, music_level="medium")

MUSIC_GAIN: dict[str, float] = {
    "off": 0.0,
    "low": 0.25,
    "medium": 0.55,
    "high": 0.85,
}

# loudness class -> (normal, dialogue present, high music)
AMBIENT_GAIN: dict[str, tuple[float, float, float]] = {
    "low": (0.35, 0.20, 0.25),
    "medium": (0.50, 0.30, 0.35),
    "high": (0.70, 0.40, 0.50),
}

SFX_DIALOGUE_HIGH_MUSIC = 0.30
SFX_DIALOGUE = 0.45
SFX_HIGH_MUSIC = 0.50
SFX_QUIET_MUSIC = 0.80
SFX_DEFAULT = 0.65


def find_scene(scenes: Sequence[Scene], t: float) -> Scene:
    """
    First scene with start <= t < end; t exactly at the end of the last scene still
    belongs to it. Falls back to DEFAULT_SCENE.
    """
    for sc in scenes:
        if sc.contains(t):
            return sc
    if scenes and float(t) == float(scenes[-1].end_s):
        return scenes[-1]
    return DEFAULT_SCENE


def music_volume(scene: Scene) -> float:
    return MUSIC_GAIN.get(scene.music_level, MUSIC_GAIN["medium"])


def ambient_volume(scene: Scene, loudness: str) -> float:
    normal, with_dialogue, with_high_music = AMBIENT_GAIN.get(loudness, AMBIENT_GAIN["medium"])
    if scene.dialogue:
        return with_dialogue
    if scene.music_level == "high":
        return with_high_music
    return normal


def sfx_volume(scene: Scene) -> float:
    if scene.dialogue and scene.music_level == "high":
        return SFX_DIALOGUE_HIGH_MUSIC
    if scene.dialogue:
        return SFX_DIALOGUE
    if scene.music_level == "high":
        return SFX_HIGH_MUSIC
    if scene.music_level in ("low", "off"):
        return SFX_QUIET_MUSIC
    return SFX_DEFAULT


def resolve_volume(
    kind: str,
    start_s: float,
    scenes: Sequence[Scene],
    *,
    loudness: str | None = None,
) -> float:
    """
    Gain in [0, 1] for a track of `kind` (music/ambient/sfx) starting at `start_s`.
    """
    scene = find_scene(scenes, start_s)
    if kind == "music":
        return music_volume(scene)
    if kind == "ambient":
        return ambient_volume(scene, loudness or "medium")
    if kind == "sfx":
        return sfx_volume(scene)
    raise ValueError(f"unknown track kind: {kind}")
