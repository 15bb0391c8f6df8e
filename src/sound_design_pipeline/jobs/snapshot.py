from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

from sound_design_pipeline.jobs.models import Job
from sound_design_pipeline.utils.io import atomic_write_json, ensure_dir, read_json
from sound_design_pipeline.utils.log import logger

JOB_FILE = "job.json"


class JobSnapshotStore:
    """
    Full-snapshot persistence: <root>/<job_id>/job.json, rewritten on every transition.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def job_dir(self, job_id: str) -> Path:
        return self.root / str(job_id)

    def write(self, job: Job) -> Path:
        path = ensure_dir(self.job_dir(job.id)) / JOB_FILE
        atomic_write_json(path, job.to_dict())
        return path

    def read(self, job_id: str) -> dict[str, Any] | None:
        path = self.job_dir(job_id) / JOB_FILE
        if not path.exists():
            return None
        data = read_json(path)
        return data if isinstance(data, dict) else None

    def iter_snapshots(self) -> Iterator[dict[str, Any]]:
        """
        Yield every readable snapshot; corrupt or partial files are logged and skipped.
        """
        if not self.root.exists():
            return
        for d in sorted(p for p in self.root.iterdir() if p.is_dir()):
            path = d / JOB_FILE
            if not path.exists():
                continue
            try:
                data = read_json(path)
            except Exception as ex:
                logger.warning("job_snapshot_unreadable", path=str(path), error=str(ex))
                continue
            if not isinstance(data, dict) or "id" not in data:
                logger.warning("job_snapshot_invalid", path=str(path))
                continue
            yield data
