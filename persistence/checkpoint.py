"""
Durable storage for migration jobs.

One JSON file per job (`<job_id>.json`) in the checkpoint directory. Writes
go to a temporary file in the same directory and are renamed into place, so
a crash mid-write leaves the previous checkpoint intact.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Union

from .config import get_config
from .errors import JobNotFound
from .models import MigrationJob

logger = logging.getLogger("syndatagen.migration")


def atomic_write_text(path: Path, text: str) -> None:
    """Write `text` to `path` via temp file + fsync + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class CheckpointStore:
    """File-backed MigrationJob persistence; safe to call from pipeline worker threads."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory else get_config().migration.checkpoint_dir
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise JobNotFound(job_id)
        return self.directory / f"{job_id}.json"

    def save(self, job: MigrationJob) -> None:
        with self._lock:
            # Serialize under the lock: worker threads mutate their own collection state.
            payload = json.dumps(job.to_dict(), indent=2, default=str)
            atomic_write_text(self._path(job.id), payload)

    def load(self, job_id: str) -> MigrationJob:
        path = self._path(job_id)
        with self._lock:
            if not path.exists():
                raise JobNotFound(job_id)
            data = json.loads(path.read_text(encoding="utf-8"))
        return MigrationJob.from_dict(data)

    def exists(self, job_id: str) -> bool:
        try:
            return self._path(job_id).exists()
        except JobNotFound:
            return False

    def list_jobs(self) -> List[str]:
        """Stored job ids, most recent first."""
        if not self.directory.exists():
            return []
        files = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.stem for p in files]
