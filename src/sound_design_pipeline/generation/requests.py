from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from sound_design_pipeline.pipeline.schemas import SoundDesignPlan, SpottedAction

FALLBACK_MAX_WORDS = 8


class TrackType(str, Enum):
    MUSIC = "music"
    AMBIENT = "ambient"
    SFX = "sfx"


@dataclass(frozen=True, slots=True)
class PlannedGenerationRequest:
    id: str
    kind: TrackType
    prompt: str
    start_s: float
    duration_s: float
    loop: bool = False
    skip: bool = False
    loudness: str | None = None
    fallback_prompt: str | None = None
    label: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


def simplify_prompt(prompt: str) -> str:
    """
    First comma-separated clause, cut to its first FALLBACK_MAX_WORDS words.
    """
    first = str(prompt or "").split(",")[0].strip()
    return " ".join(first.split()[:FALLBACK_MAX_WORDS])


def fallback_prompt_for(req: PlannedGenerationRequest) -> str | None:
    """
    Substitute prompt for a request whose primary prompt failed, or None when no
    distinct variant exists.
    """
    cand = (req.fallback_prompt or "").strip() or simplify_prompt(req.prompt)
    if not cand or cand == req.prompt.strip():
        return None
    return cand


def _label(text: str, default: str) -> str:
    t = " ".join(str(text or "").split())
    if not t:
        return default
    return t if len(t) <= 60 else t[:57].rstrip() + "..."


def build_generation_requests(
    plan: SoundDesignPlan, actions: Sequence[SpottedAction] = ()
) -> list[PlannedGenerationRequest]:
    """
    Music segments (skip-marked included, flagged), then ambient segments, then
    spotted actions. Ids are stable per position: music_0, ambient_0, sfx_0, ...
    """
    out: list[PlannedGenerationRequest] = []
    for i, m in enumerate(plan.music_segments):
        prompt = m.prompt.strip() or f"{m.genre} {m.style} music"
        out.append(
            PlannedGenerationRequest(
                id=f"music_{i}",
                kind=TrackType.MUSIC,
                prompt=prompt,
                start_s=float(m.start_s),
                duration_s=float(m.duration_s),
                loop=bool(m.loop),
                skip=bool(m.skip),
                fallback_prompt=m.fallback_prompt,
                label=_label(prompt, f"Music {i + 1}"),
            )
        )
    for i, a in enumerate(plan.ambient_segments):
        out.append(
            PlannedGenerationRequest(
                id=f"ambient_{i}",
                kind=TrackType.AMBIENT,
                prompt=a.prompt.strip(),
                start_s=float(a.start_s),
                duration_s=float(a.duration_s),
                loop=bool(a.loop),
                loudness=a.loudness,
                fallback_prompt=a.fallback_prompt,
                label=_label(a.prompt, f"Ambience {i + 1}"),
            )
        )
    for i, act in enumerate(actions):
        out.append(
            PlannedGenerationRequest(
                id=f"sfx_{i}",
                kind=TrackType.SFX,
                prompt=act.description.strip(),
                start_s=float(act.time_s),
                duration_s=float(act.duration_s),
                fallback_prompt=act.fallback_prompt,
                label=_label(act.description, f"SFX {i + 1}"),
            )
        )
    return out
