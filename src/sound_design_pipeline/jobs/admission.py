from __future__ import annotations

import threading


class ConflictError(RuntimeError):
    def __init__(self, active_job_id: str) -> None:
        super().__init__(f"A job is already in progress: {active_job_id}")
        self.active_job_id = str(active_job_id)


class AdmissionControl:
    """
    Single-active-job slot.

    Only the JobRegistry acquires/releases it (job creation and terminal transitions).
    Each registry owns its own instance, so tests never share a slot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: str | None = None

    @property
    def active_job_id(self) -> str | None:
        with self._lock:
            return self._active

    def acquire(self, job_id: str) -> None:
        with self._lock:
            if self._active is not None:
                raise ConflictError(self._active)
            self._active = str(job_id)

    def release(self, job_id: str) -> bool:
        with self._lock:
            if self._active != str(job_id):
                return False
            self._active = None
            return True
