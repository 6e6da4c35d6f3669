"""Durable job state on the local filesystem.

Layout under the state directory:
    jobs/<job_id>.json          One Job record per file
    handles/<sha256>.json       Pending-handle index, one record per handle

Writes go through a temp file, fsync and os.replace, so a reader never sees
a half-written record and a put() has reached the disk before it returns.
There is no read cache: get() always reads the file.

Concurrency: all read-modify-write cycles on a job go through update(),
which holds that job's lock for the whole cycle. Locks are per process;
multi-instance coordination is out of scope.
"""

import hashlib
import logging
import os
import tempfile
import threading
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError as SchemaError

from stripforge.errors import JobNotFound, StateStoreError
from stripforge.jobs.schemas import HandleRecord, Job, JobStatus, utc_now

logger = logging.getLogger(__name__)

JobMutator = Callable[[Job], Optional[Job]]


class StateStore:
    """JSON-file store for Job records and the pending-handle index."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.jobs_dir = self.state_dir / "jobs"
        self.handles_dir = self.state_dir / "handles"

        # Entries vanish once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --- Locking ---

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def job_lock(self, job_id: str) -> Iterator[None]:
        """Serialize all writers of one job."""
        lock = self._lock_for(f"job:{job_id}")
        with lock:
            yield

    # --- Paths ---

    def _job_path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise JobNotFound(job_id)
        return self.jobs_dir / f"{job_id}.json"

    def _handle_path(self, handle: str) -> Path:
        digest = hashlib.sha256(handle.encode("utf-8")).hexdigest()
        return self.handles_dir / f"{digest}.json"

    # --- Low-level I/O ---

    def _write_atomic(self, path: Path, payload: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write {path}: {e}") from e

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Failed to read {path}: {e}") from e

    # --- Jobs ---

    def exists(self, job_id: str) -> bool:
        try:
            return self._job_path(job_id).exists()
        except JobNotFound:
            return False

    def get(self, job_id: str) -> Job:
        """Read a job record. Raises JobNotFound if there is none."""
        text = self._read(self._job_path(job_id))
        if text is None:
            raise JobNotFound(job_id)
        try:
            return Job.model_validate_json(text)
        except SchemaError as e:
            raise StateStoreError(f"Corrupt job record {job_id}: {e}") from e

    def put(self, job: Job) -> None:
        """Persist a job record. Failures propagate as StateStoreError."""
        job.updated_at = utc_now()
        with self.job_lock(job.id):
            self._write_atomic(self._job_path(job.id), job.model_dump_json(indent=2))
        logger.debug(f"[{job.id}] State saved (status={job.status.value}, progress={job.progress})")

    def update(self, job_id: str, mutator: JobMutator) -> Job:
        """Locked read-modify-write of one job.

        The mutator changes the job in place and returns it. Returning None
        means nothing changed and skips the write; the current record is
        returned either way.
        """
        with self.job_lock(job_id):
            job = self.get(job_id)
            updated = mutator(job)
            if updated is None:
                return job
            self.put(updated)
            return updated

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> list[Job]:
        """List jobs newest first, optionally filtered by status."""
        if not self.jobs_dir.exists():
            return []

        jobs: list[Job] = []
        for path in self.jobs_dir.glob("*.json"):
            try:
                job = Job.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, SchemaError) as e:
                logger.warning(f"Skipping unreadable job file {path.name}: {e}")
                continue
            if status is None or job.status == status:
                jobs.append(job)

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    # --- Pending-handle index ---

    def put_handle(self, record: HandleRecord) -> None:
        with self._lock_for(f"handle:{record.handle}"):
            self._write_atomic(self._handle_path(record.handle), record.model_dump_json())
        logger.debug(
            f"[{record.job_id}] Indexed handle {record.handle} -> "
            f"{record.phase.value}/{record.item_id}"
        )

    def get_handle(self, handle: str) -> Optional[HandleRecord]:
        with self._lock_for(f"handle:{handle}"):
            text = self._read(self._handle_path(handle))
        if text is None:
            return None
        try:
            return HandleRecord.model_validate_json(text)
        except SchemaError as e:
            raise StateStoreError(f"Corrupt handle record for {handle}: {e}") from e

    def delete_handle(self, handle: str) -> bool:
        """Remove a handle record. Returns False if it was already gone."""
        with self._lock_for(f"handle:{handle}"):
            try:
                self._handle_path(handle).unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StateStoreError(f"Failed to delete handle {handle}: {e}") from e

    def count_handles(self) -> int:
        if not self.handles_dir.exists():
            return 0
        return sum(1 for _ in self.handles_dir.glob("*.json"))

