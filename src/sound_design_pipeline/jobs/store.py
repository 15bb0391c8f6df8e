from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from sound_design_pipeline.jobs.admission import AdmissionControl
from sound_design_pipeline.jobs.events import ProgressEvent, ProgressPayload
from sound_design_pipeline.jobs.models import TERMINAL_STAGES, Job, JobStatus, Stage
from sound_design_pipeline.jobs.snapshot import JobSnapshotStore
from sound_design_pipeline.ops.metrics import jobs_created, jobs_finished
from sound_design_pipeline.utils.log import logger

RESTART_MESSAGE = "Server restarted during processing"
RESTART_ERROR = "Server restarted"
CANCEL_MESSAGE = "Job cancelled by user"


class JobRegistry:
    """
    Single owner of all Job state.

    Every mutation (create, event append, cancel, track update) goes through this class,
    under one lock, and is followed by a full snapshot write. The admission slot is
    acquired in create_job and released only in _append_locked on a terminal stage.
    """

    def __init__(
        self,
        snapshots: JobSnapshotStore,
        *,
        admission: AdmissionControl | None = None,
    ) -> None:
        self.snapshots = snapshots
        self.admission = admission or AdmissionControl()
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, state_dir: Path) -> JobRegistry:
        reg = cls(JobSnapshotStore(state_dir))
        reg.recover()
        return reg

    def job_dir(self, job_id: str) -> Path:
        return self.snapshots.job_dir(job_id)

    # --- startup recovery ---
    def recover(self) -> list[str]:
        """
        Reload every persisted job. Anything still `running` is failed with a synthetic
        restart event: its cancellation handle and in-flight calls died with the process.

        Returns the ids that were forced to `error`.
        """
        forced: list[str] = []
        with self._lock:
            for raw in self.snapshots.iter_snapshots():
                try:
                    job = Job.from_dict(raw)
                except Exception as ex:
                    logger.warning("job_snapshot_skipped", job_id=str(raw.get("id")), error=str(ex))
                    continue
                self._jobs[job.id] = job
                if job.status == JobStatus.RUNNING:
                    job.events.append(
                        ProgressPayload(
                            stage=Stage.ERROR.value,
                            progress=job.events.last_progress(),
                            message=RESTART_MESSAGE,
                            error=RESTART_ERROR,
                        )
                    )
                    job.status = JobStatus.ERROR
                    self._persist(job)
                    forced.append(job.id)
        if forced:
            logger.warning("jobs_failed_on_restart", job_ids=forced)
        logger.info("job_registry_recovered", jobs=len(self._jobs), forced_error=len(forced))
        return forced

    # --- queries ---
    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(str(job_id))

    def list_jobs(self) -> list[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def events_after(self, job_id: str, cursor: str | int | None) -> list[ProgressEvent]:
        with self._lock:
            job = self._jobs.get(str(job_id))
            if job is None:
                return []
            return job.events.after(cursor)

    def last_progress(self, job_id: str) -> float:
        with self._lock:
            job = self._jobs.get(str(job_id))
            return job.events.last_progress() if job is not None else 0.0

    @property
    def active_job_id(self) -> str | None:
        return self.admission.active_job_id

    # --- mutations ---
    def create_job(
        self, job_id: str, video_path: str, *, options: dict[str, Any] | None = None
    ) -> Job:
        """
        Admit a new running job. Raises ConflictError (carrying the active id) if another
        job is still running.
        """
        with self._lock:
            if str(job_id) in self._jobs:
                raise ValueError(f"job already exists: {job_id}")
            self.admission.acquire(str(job_id))
            job = Job.new(str(job_id), str(video_path), options=options)
            self._jobs[job.id] = job
            self._persist(job)
        jobs_created.inc()
        logger.info("job_created", job_id=job.id, video_path=job.video_path)
        return job

    def add_event(self, job_id: str, payload: ProgressPayload) -> ProgressEvent | None:
        """
        Append a progress event. Events for unknown or already-terminal jobs are dropped
        (returns None); a terminal stage finalizes the job.
        """
        with self._lock:
            job = self._jobs.get(str(job_id))
            if job is None:
                logger.warning("event_for_unknown_job", job_id=str(job_id), stage=payload.stage)
                return None
            if not job.is_running:
                logger.debug(
                    "event_after_terminal_dropped",
                    job_id=job.id,
                    status=job.status.value,
                    stage=payload.stage,
                )
                return None
            return self._append_locked(job, payload)

    def cancel_job(self, job_id: str) -> bool:
        """
        Signal cancellation. No-op returning False unless the job is running.
        """
        with self._lock:
            job = self._jobs.get(str(job_id))
            if job is None or not job.is_running:
                return False
            if job.cancel_token is not None:
                job.cancel_token.cancel("cancelled by user")
            self._append_locked(
                job,
                ProgressPayload(
                    stage=Stage.CANCELLED.value,
                    progress=job.events.last_progress(),
                    message=CANCEL_MESSAGE,
                ),
            )
        logger.info("job_cancelled", job_id=str(job_id))
        return True

    def update_track(self, job_id: str, track_id: str, **fields: Any) -> dict[str, Any] | None:
        """
        Patch one track of a finished job's result (used by regeneration). Returns the
        updated track, or None if the job/result/track does not exist.
        """
        with self._lock:
            job = self._jobs.get(str(job_id))
            if job is None or not job.result:
                return None
            for track in job.result.get("tracks") or []:
                if str(track.get("id")) == str(track_id):
                    track.update(fields)
                    self._persist(job)
                    return dict(track)
        return None

    # --- internals ---
    def _append_locked(self, job: Job, payload: ProgressPayload) -> ProgressEvent:
        ev = job.events.append(payload)
        final = TERMINAL_STAGES.get(payload.stage)
        if final is not None:
            job.status = final
            if payload.result is not None:
                job.result = payload.result
            self.admission.release(job.id)
            jobs_finished.labels(status=final.value).inc()
            logger.info("job_finished", job_id=job.id, status=final.value, message=payload.message)
        self._persist(job)
        return ev

    def _persist(self, job: Job) -> None:
        try:
            self.snapshots.write(job)
        except Exception as ex:
            # Durability is best-effort; never surfaces on the job's own stream.
            logger.warning("job_snapshot_failed", job_id=job.id, error=str(ex))
