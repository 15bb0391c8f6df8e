"""
Typed results exchanged with the analysis collaborators.

Collaborators may return these models or plain dicts/JSON of the same shape;
the orchestrator validates either through `model_validate`.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MusicLevel = Literal["off", "low", "medium", "high"]
Loudness = Literal["low", "medium", "high"]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MediaRef(_Model):
    """Opaque handle returned by the upload collaborator."""

    uri: str
    mime_type: str = "video/mp4"
    duration_s: float = 0.0
    meta: dict[str, Any] = Field(default_factory=dict)


class StoryBeat(_Model):
    start_s: float
    end_s: float
    description: str = ""
    emotion: str = "neutral"
    significance: Literal["major", "minor", "transition"] = "minor"
    environment: str = ""


class SpeechSegment(_Model):
    start_s: float
    end_s: float
    text: str = ""
    language: str = "en"
    speaker: str = "speaker_1"


class StoryAnalysis(_Model):
    summary: str = ""
    genre: str = "general"
    setting: str = ""
    emotional_arc: str = ""
    beats: list[StoryBeat] = Field(default_factory=list)
    speech_segments: list[SpeechSegment] = Field(default_factory=list)
    duration_s: float = 0.0


class Scene(_Model):
    start_s: float
    end_s: float
    description: str = ""
    mood: str = ""
    dialogue: bool = False
    music_level: MusicLevel = "medium"

    def contains(self, t: float) -> bool:
        return self.start_s <= t < self.end_s


class MusicSegment(_Model):
    start_s: float
    end_s: float
    prompt: str = ""
    genre: str = "cinematic"
    style: str = "instrumental"
    loop: bool = False
    skip: bool = False
    fallback_prompt: str | None = None

    @property
    def duration_s(self) -> float:
        return max(0.0, self.end_s - self.start_s)


class AmbientSegment(_Model):
    start_s: float
    end_s: float
    prompt: str = ""
    loudness: Loudness = "medium"
    loop: bool = True
    fallback_prompt: str | None = None

    @property
    def duration_s(self) -> float:
        return max(0.0, self.end_s - self.start_s)


class SoundDesignPlan(_Model):
    scenes: list[Scene] = Field(default_factory=list)
    music_segments: list[MusicSegment] = Field(default_factory=list)
    ambient_segments: list[AmbientSegment] = Field(default_factory=list)


class SpottedAction(_Model):
    time_s: float
    duration_s: float = 1.0
    description: str = ""
    category: Literal["hard", "soft"] = "hard"
    fallback_prompt: str | None = None
