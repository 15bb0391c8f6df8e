from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class ProgressPayload:
    stage: str
    progress: float
    message: str
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "stage": self.stage,
            "progress": float(self.progress),
            "message": self.message,
        }
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ProgressPayload:
        return cls(
            stage=str(d.get("stage") or ""),
            progress=float(d.get("progress") or 0.0),
            message=str(d.get("message") or ""),
            result=d.get("result"),
            error=d.get("error"),
        )


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    id: str
    data: ProgressPayload
    ts: str = ""

    @property
    def index(self) -> int:
        return int(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "ts": self.ts, "data": self.data.to_dict()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ProgressEvent:
        return cls(
            id=str(d["id"]),
            data=ProgressPayload.from_dict(dict(d.get("data") or {})),
            ts=str(d.get("ts") or ""),
        )


def parse_cursor(cursor: str | int | None) -> int:
    """
    Translate a replay cursor (the last index an observer saw) into the first index to send.

    Missing or malformed cursors mean "replay everything".
    """
    if cursor is None:
        return 0
    try:
        last = int(str(cursor).strip())
    except (TypeError, ValueError):
        return 0
    return max(0, last + 1)


@dataclass(slots=True)
class EventLog:
    """
    Append-only, gap-free progress history for one job.

    Index i is always stored at position i, so replay is a slice. Not thread-safe on
    its own; the JobRegistry serializes appends under its lock.
    """

    _events: list[ProgressEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ProgressEvent]:
        return iter(list(self._events))

    def append(self, payload: ProgressPayload) -> ProgressEvent:
        ev = ProgressEvent(id=str(len(self._events)), data=payload, ts=now_utc())
        self._events.append(ev)
        return ev

    def after(self, cursor: str | int | None) -> list[ProgressEvent]:
        return list(self._events[parse_cursor(cursor) :])

    def last(self) -> ProgressEvent | None:
        return self._events[-1] if self._events else None

    def last_progress(self) -> float:
        ev = self.last()
        return float(ev.data.progress) if ev is not None else 0.0

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._events]

    @classmethod
    def from_list(cls, items: list[dict[str, Any]]) -> EventLog:
        log = cls()
        for i, raw in enumerate(items or []):
            ev = ProgressEvent.from_dict(raw)
            # index == position, even for hand-edited snapshots
            if ev.id != str(i):
                ev = ProgressEvent(id=str(i), data=ev.data, ts=ev.ts)
            log._events.append(ev)
        return log
