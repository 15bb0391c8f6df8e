from __future__ import annotations

from sound_design_pipeline.jobs.models import Stage

# Non-overlapping progress sub-ranges, in pipeline order.
STAGE_RANGES: dict[Stage, tuple[float, float]] = {
    Stage.UPLOADING: (0.00, 0.15),
    Stage.STORY_ANALYSIS: (0.15, 0.28),
    Stage.SOUND_DESIGN_PLANNING: (0.28, 0.40),
    Stage.ACTION_SPOTTING: (0.40, 0.50),
    Stage.GENERATING: (0.50, 0.98),
}

COMPLETE_PROGRESS = 1.0


def stage_progress(stage: Stage, fraction: float = 0.0) -> float:
    """
    Map a fraction of one stage's work onto the job-wide [0, 1] scale.
    """
    lo, hi = STAGE_RANGES[stage]
    f = min(1.0, max(0.0, float(fraction)))
    return round(lo + (hi - lo) * f, 4)
