from __future__ import annotations

import pytest

from sound_design_pipeline.generation.mix import (
    DEFAULT_SCENE,
    ambient_volume,
    find_scene,
    music_volume,
    resolve_volume,
    sfx_volume,
)
from sound_design_pipeline.pipeline.schemas import Scene


def _scene(dialogue: bool = False, music_level: str = "medium", start: float = 0, end: float = 10) -> Scene:
    return Scene(start_s=start, end_s=end, dialogue=dialogue, music_level=music_level)


@pytest.mark.parametrize(
    "level, gain", [("off", 0.0), ("low", 0.25), ("medium", 0.55), ("high", 0.85)]
)
def test_music_gain_by_level(level: str, gain: float) -> None:
    assert music_volume(_scene(music_level=level)) == gain


@pytest.mark.parametrize(
    "loudness, normal, dialogue, high_music",
    [
        ("low", 0.35, 0.20, 0.25),
        ("medium", 0.50, 0.30, 0.35),
        ("high", 0.70, 0.40, 0.50),
    ],
)
def test_ambient_table(loudness: str, normal: float, dialogue: float, high_music: float) -> None:
    assert ambient_volume(_scene(), loudness) == normal
    assert ambient_volume(_scene(dialogue=True), loudness) == dialogue
    assert ambient_volume(_scene(music_level="high"), loudness) == high_music
    # dialogue column wins when both apply
    assert ambient_volume(_scene(dialogue=True, music_level="high"), loudness) == dialogue


@pytest.mark.parametrize(
    "dialogue, level, gain",
    [
        (True, "high", 0.30),
        (True, "medium", 0.45),
        (True, "off", 0.45),
        (False, "high", 0.50),
        (False, "low", 0.80),
        (False, "off", 0.80),
        (False, "medium", 0.65),
    ],
)
def test_sfx_rule_order(dialogue: bool, level: str, gain: float) -> None:
    assert sfx_volume(_scene(dialogue=dialogue, music_level=level)) == gain


def test_find_scene_half_open_with_closed_last_end() -> None:
    scenes = [_scene(start=0, end=10, music_level="high"), _scene(start=10, end=20, music_level="off")]
    assert find_scene(scenes, 0) is scenes[0]
    assert find_scene(scenes, 9.99) is scenes[0]
    assert find_scene(scenes, 10) is scenes[1]
    assert find_scene(scenes, 20) is scenes[1]
    assert find_scene(scenes, 25) is DEFAULT_SCENE
    assert find_scene([], 3) is DEFAULT_SCENE


def test_resolve_volume_scenarios() -> None:
    high = [_scene(music_level="high")]
    off = [_scene(music_level="off")]
    busy = [_scene(dialogue=True, music_level="high")]
    assert resolve_volume("music", 2.0, high) == 0.85
    assert resolve_volume("music", 2.0, off) == 0.0
    assert resolve_volume("sfx", 2.0, busy) == 0.3
    assert resolve_volume("ambient", 2.0, busy, loudness="high") == 0.40
    # outside every scene: dialogue=False, music_level=medium
    assert resolve_volume("sfx", 50.0, high) == 0.65
    assert resolve_volume("music", 50.0, high) == 0.55
    with pytest.raises(ValueError):
        resolve_volume("dialogue", 0.0, high)
