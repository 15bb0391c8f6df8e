from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sound_design_pipeline.jobs.cancel import CancelToken
from sound_design_pipeline.jobs.events import EventLog, now_utc


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    UPLOADING = "uploading"
    STORY_ANALYSIS = "story_analysis"
    SOUND_DESIGN_PLANNING = "sound_design_planning"
    ACTION_SPOTTING = "action_spotting"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STAGES: dict[str, JobStatus] = {
    Stage.COMPLETE.value: JobStatus.COMPLETE,
    Stage.ERROR.value: JobStatus.ERROR,
    Stage.CANCELLED.value: JobStatus.CANCELLED,
}


def is_terminal_stage(stage: str | Stage) -> bool:
    return str(getattr(stage, "value", stage)) in TERMINAL_STAGES


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Job:
    id: str
    status: JobStatus
    video_path: str
    created_at: str
    events: EventLog = field(default_factory=EventLog)
    result: dict[str, Any] | None = None
    options: dict[str, Any] = field(default_factory=dict)
    # In-memory only; rebuilt as already-cancelled on restore.
    cancel_token: CancelToken | None = field(default=None, repr=False, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status == JobStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "video_path": self.video_path,
            "created_at": self.created_at,
            "events": self.events.to_list(),
            "result": self.result,
            "options": dict(self.options or {}),
        }

    def summary(self) -> dict[str, Any]:
        last = self.events.last()
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at,
            "events": len(self.events),
            "last_event": last.data.to_dict() if last is not None else None,
            "has_result": self.result is not None,
        }

    @classmethod
    def new(cls, job_id: str, video_path: str, *, options: dict[str, Any] | None = None) -> Job:
        return cls(
            id=str(job_id),
            status=JobStatus.RUNNING,
            video_path=str(video_path),
            created_at=now_utc(),
            options=dict(options or {}),
            cancel_token=CancelToken(),
        )

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Job:
        dd = dict(d)
        dd.setdefault("result", None)
        dd.setdefault("options", {})
        dd.setdefault("created_at", "")
        dd.pop("cancel_token", None)
        st = dd["status"]
        if isinstance(st, str) and st.startswith("JobStatus."):
            st = st.split(".", 1)[1].lower()
        return cls(
            id=str(dd["id"]),
            status=JobStatus(st),
            video_path=str(dd.get("video_path") or ""),
            created_at=str(dd["created_at"]),
            events=EventLog.from_list(list(dd.get("events") or [])),
            result=dd["result"],
            options=dict(dd["options"] or {}),
            cancel_token=CancelToken.already_cancelled("restored"),
        )
