from __future__ import annotations

from pathlib import Path
from typing import Any

from sound_design_pipeline.jobs.events import now_utc
from sound_design_pipeline.utils.io import atomic_write_json, ensure_dir
from sound_design_pipeline.utils.log import logger

UPLOAD = "01_upload.json"
STORY_ANALYSIS = "02_story_analysis.json"
SOUND_DESIGN_PLAN = "03_sound_design_plan.json"
ACTION_SPOTTING = "04_action_spotting.json"
GENERATION_REQUESTS = "05_generation_requests.json"
GENERATION_REPORT = "06_generation_report.json"
PIPELINE_LOG = "pipeline.log"


class DebugTrail:
    """
    Per-job audit artifacts under <job_dir>/debug/.

    Every write is best-effort: a failure is logged and otherwise ignored.
    """

    def __init__(self, root: Path, *, enabled: bool = True) -> None:
        self.root = Path(root)
        self.enabled = bool(enabled)

    def write(self, name: str, data: Any) -> Path | None:
        if not self.enabled:
            return None
        path = self.root / name
        try:
            atomic_write_json(path, data)
        except Exception as ex:
            logger.warning("debug_trail_write_failed", path=str(path), error=str(ex))
            return None
        return path

    def note(self, stage: str, message: str) -> None:
        if not self.enabled:
            return
        try:
            ensure_dir(self.root)
            with (self.root / PIPELINE_LOG).open("a", encoding="utf-8") as f:
                f.write(f"{now_utc()} [{stage}] {message}\n")
        except Exception as ex:
            logger.warning("debug_trail_note_failed", path=str(self.root), error=str(ex))
