from __future__ import annotations

import json
from pathlib import Path

import pytest

from sound_design_pipeline.jobs.admission import AdmissionControl, ConflictError
from sound_design_pipeline.jobs.events import ProgressPayload
from sound_design_pipeline.jobs.models import JobStatus
from sound_design_pipeline.jobs.snapshot import JOB_FILE, JobSnapshotStore
from sound_design_pipeline.jobs.store import JobRegistry


def _registry(tmp_path: Path) -> JobRegistry:
    return JobRegistry(JobSnapshotStore(tmp_path / "jobs"))


def _ev(stage: str, progress: float, message: str = "", **kw) -> ProgressPayload:
    return ProgressPayload(stage=stage, progress=progress, message=message or stage, **kw)


def test_admission_control_is_per_instance() -> None:
    a = AdmissionControl()
    b = AdmissionControl()
    a.acquire("j1")
    b.acquire("j2")
    with pytest.raises(ConflictError) as ei:
        a.acquire("j3")
    assert ei.value.active_job_id == "j1"
    assert a.release("other") is False
    assert a.release("j1") is True
    assert a.active_job_id is None


def test_second_create_fails_until_terminal(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    with pytest.raises(ConflictError) as ei:
        reg.create_job("b", "/v/b.mp4")
    assert ei.value.active_job_id == "a"

    reg.add_event("a", _ev("complete", 1.0, result={"tracks": []}))
    assert reg.get_job("a").status == JobStatus.COMPLETE
    assert reg.active_job_id is None
    reg.create_job("b", "/v/b.mp4")
    assert reg.active_job_id == "b"


def test_events_persist_as_full_snapshot(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("uploading", 0.0))
    reg.add_event("a", _ev("story_analysis", 0.15))

    raw = json.loads((tmp_path / "jobs" / "a" / JOB_FILE).read_text(encoding="utf-8"))
    assert raw["status"] == "running"
    assert [e["id"] for e in raw["events"]] == ["0", "1"]
    assert "cancel_token" not in raw


def test_terminal_event_finalizes_and_drops_later_events(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("uploading", 0.0))
    reg.add_event("a", _ev("error", 0.0, message="Pipeline failed: boom", error="boom"))
    assert reg.get_job("a").status == JobStatus.ERROR
    assert reg.add_event("a", _ev("generating", 0.6)) is None
    assert len(reg.get_job("a").events) == 2


def test_cancel_is_idempotent(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    job = reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("story_analysis", 0.2))

    assert reg.cancel_job("a") is True
    assert reg.cancel_job("a") is False
    assert job.cancel_token.cancelled
    last = job.events.last()
    assert last.data.stage == "cancelled"
    assert last.data.message == "Job cancelled by user"
    assert last.data.progress == pytest.approx(0.2)
    assert reg.active_job_id is None


def test_cancel_complete_job_appends_nothing(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("complete", 1.0, result={"tracks": []}))
    n = len(reg.get_job("a").events)
    assert reg.cancel_job("a") is False
    assert len(reg.get_job("a").events) == n
    assert reg.cancel_job("missing") is False


def test_restart_forces_running_jobs_to_error(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("generating", 0.6))

    fresh = _registry(tmp_path)
    forced = fresh.recover()
    assert forced == ["a"]
    job = fresh.get_job("a")
    assert job.status == JobStatus.ERROR
    last = job.events.last()
    assert last.data.stage == "error"
    assert last.data.message == "Server restarted during processing"
    assert last.data.error == "Server restarted"
    assert last.data.progress == pytest.approx(0.6)
    assert fresh.active_job_id is None
    assert job.cancel_token.cancelled

    # The correction itself was persisted.
    again = _registry(tmp_path)
    assert again.recover() == []
    assert again.get_job("a").status == JobStatus.ERROR


def test_recover_skips_corrupt_snapshots(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    reg.add_event("a", _ev("complete", 1.0, result={"tracks": []}))
    bad = tmp_path / "jobs" / "zzz"
    bad.mkdir(parents=True)
    (bad / JOB_FILE).write_text("{not json", encoding="utf-8")

    fresh = _registry(tmp_path)
    assert fresh.recover() == []
    assert [j.id for j in fresh.list_jobs()] == ["a"]


def test_snapshot_failure_is_not_job_visible(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")

    def _boom(job):
        raise OSError("disk full")

    monkeypatch.setattr(reg.snapshots, "write", _boom)
    ev = reg.add_event("a", _ev("uploading", 0.0))
    assert ev is not None
    assert [e.data.stage for e in reg.get_job("a").events] == ["uploading"]


def test_update_track_patches_result(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    reg.create_job("a", "/v/a.mp4")
    assert reg.update_track("a", "sfx_0", prompt="x") is None
    reg.add_event(
        "a",
        _ev("complete", 1.0, result={"tracks": [{"id": "sfx_0", "prompt": "old", "loop": False}]}),
    )
    updated = reg.update_track("a", "sfx_0", prompt="new", loop=True)
    assert updated == {"id": "sfx_0", "prompt": "new", "loop": True}
    assert reg.update_track("a", "nope", prompt="x") is None

    fresh = _registry(tmp_path)
    fresh.recover()
    assert fresh.get_job("a").result["tracks"][0]["prompt"] == "new"
