"""Durable job queue: the whole job list is read, changed and written back
inside one ``BEGIN IMMEDIATE`` transaction, so concurrent processes sharing
the file serialise on SQLite's write lock."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import pydantic

from icsengine.core.clock import Clock, utc_now
from icsengine.core.errors import StorageCorrupted, ValidationError
from icsengine.queue.models import JobStatus, QueueJob
from icsengine.storage.cache import connect

logger = logging.getLogger(__name__)

# ── Job Lifecycle ────────────────────────────────────────────────────

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    # back to PENDING only through stale-processing recovery
    JobStatus.PROCESSING: {JobStatus.FAILED, JobStatus.PENDING},
    # manual retry
    JobStatus.FAILED: {JobStatus.PENDING},
}

DISCARDABLE = {JobStatus.PENDING, JobStatus.FAILED}

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_state (
    id          INTEGER PRIMARY KEY CHECK (id = 1),
    jobs        TEXT NOT NULL,      -- JSON array of jobs, in enqueue order
    updated_at  TEXT NOT NULL
);
"""


def _decode(raw: str) -> list[QueueJob]:
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("job list is not an array")
        return [QueueJob.model_validate(item) for item in data]
    except (ValueError, pydantic.ValidationError) as exc:
        raise StorageCorrupted(f"queue store is unreadable: {exc}") from exc


def _encode(jobs: list[QueueJob]) -> str:
    return json.dumps([job.model_dump(mode="json") for job in jobs])


# ── JobQueue ─────────────────────────────────────────────────────────


class JobQueue:
    """FIFO list of shares awaiting extraction and dispatch."""

    def __init__(self, db_path: Path, clock: Clock = utc_now):
        self.db_path = Path(db_path)
        self._clock = clock
        self._conn = connect(self.db_path)
        # transactions are managed explicitly below
        self._conn.isolation_level = None
        try:
            self._conn.executescript(_SCHEMA)
        except sqlite3.DatabaseError as exc:
            self._conn.close()
            raise StorageCorrupted(f"cannot initialise {self.db_path}: {exc}") from exc

    @contextmanager
    def _locked(self) -> Iterator[list[QueueJob]]:
        """Read-modify-write the job list under an exclusive write lock.

        Changes made to the yielded list are persisted on normal exit and
        rolled back on any exception.
        """
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.DatabaseError as exc:
            raise StorageCorrupted(f"cannot lock queue store: {exc}") from exc

        try:
            row = self._conn.execute("SELECT jobs FROM queue_state WHERE id = 1").fetchone()
            jobs = _decode(row["jobs"]) if row else []
            yield jobs
            self._conn.execute(
                """INSERT INTO queue_state (id, jobs, updated_at) VALUES (1, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       jobs = excluded.jobs, updated_at = excluded.updated_at""",
                (_encode(jobs), self._clock().isoformat()),
            )
            self._conn.execute("COMMIT")
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise

    def _snapshot(self) -> list[QueueJob]:
        row = self._conn.execute("SELECT jobs FROM queue_state WHERE id = 1").fetchone()
        return _decode(row["jobs"]) if row else []

    @staticmethod
    def _find(jobs: list[QueueJob], job_id: str) -> int:
        for i, job in enumerate(jobs):
            if job.id == job_id:
                return i
        raise ValidationError(f"no queued job with id {job_id}")

    @staticmethod
    def _check_claim(job: QueueJob, claimed_at: Optional[datetime]) -> None:
        """Reject a write from a worker whose claim was recovered and re-issued."""
        if claimed_at is not None and job.updated_at != claimed_at:
            raise ValidationError(f"job {job.id} was reclaimed by another worker")

    def _transition(self, job: QueueJob, new_status: JobStatus) -> QueueJob:
        if new_status not in ALLOWED_TRANSITIONS[job.status]:
            raise ValidationError(
                f"cannot move job {job.id} from {job.status.value} to {new_status.value}"
            )
        logger.info("Job %s: %s -> %s", job.id, job.status.value, new_status.value)
        return job.model_copy(update={"status": new_status, "updated_at": self._clock()})

    # ── Mutations ────────────────────────────────────────────

    def enqueue(self, job: QueueJob) -> QueueJob:
        """Append a job in ``Pending``; its toggles are already a snapshot."""
        now = self._clock()
        job = job.model_copy(
            update={
                "status": JobStatus.PENDING,
                "error_message": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        with self._locked() as jobs:
            if any(j.id == job.id for j in jobs):
                raise ValidationError(f"job {job.id} is already queued")
            jobs.append(job)
        logger.info("Enqueued job %s for %s", job.id, job.payload.url)
        return job

    def claim_next(self) -> Optional[QueueJob]:
        """Move the oldest ``Pending`` job to ``Processing`` and return it."""
        with self._locked() as jobs:
            for i, job in enumerate(jobs):
                if job.status == JobStatus.PENDING:
                    jobs[i] = self._transition(job, JobStatus.PROCESSING)
                    return jobs[i]
        return None

    def mark_failed(
        self, job_id: str, message: str, claimed_at: Optional[datetime] = None
    ) -> QueueJob:
        """Record a failure. With ``claimed_at``, only the claiming worker may."""
        with self._locked() as jobs:
            i = self._find(jobs, job_id)
            self._check_claim(jobs[i], claimed_at)
            failed = self._transition(jobs[i], JobStatus.FAILED)
            jobs[i] = failed.model_copy(update={"error_message": message})
            return jobs[i]

    def remove(self, job_id: str, claimed_at: Optional[datetime] = None) -> None:
        """Delete a job that finished successfully."""
        with self._locked() as jobs:
            i = self._find(jobs, job_id)
            self._check_claim(jobs[i], claimed_at)
            if jobs[i].status != JobStatus.PROCESSING:
                raise ValidationError(
                    f"job {job_id} is {jobs[i].status.value}, not processing"
                )
            del jobs[i]
        logger.info("Job %s completed and removed", job_id)

    def retry(self, job_id: str) -> QueueJob:
        """User retry: ``Failed`` back to ``Pending``, keeping queue position."""
        with self._locked() as jobs:
            i = self._find(jobs, job_id)
            pending = self._transition(jobs[i], JobStatus.PENDING)
            jobs[i] = pending.model_copy(update={"error_message": None})
            return jobs[i]

    def retry_failed(self) -> int:
        with self._locked() as jobs:
            count = 0
            for i, job in enumerate(jobs):
                if job.status == JobStatus.FAILED:
                    jobs[i] = self._transition(job, JobStatus.PENDING).model_copy(
                        update={"error_message": None}
                    )
                    count += 1
            return count

    def discard(self, job_id: str) -> QueueJob:
        with self._locked() as jobs:
            i = self._find(jobs, job_id)
            job = jobs[i]
            if job.status not in DISCARDABLE:
                raise ValidationError(f"job {job_id} is {job.status.value} and cannot be discarded")
            del jobs[i]
        logger.info("Job %s discarded", job_id)
        return job

    def recover_stale(self, older_than_seconds: float) -> int:
        """Return ``Processing`` jobs abandoned by a crashed process to ``Pending``."""
        now = self._clock()
        with self._locked() as jobs:
            count = 0
            for i, job in enumerate(jobs):
                if job.status != JobStatus.PROCESSING:
                    continue
                if (now - job.updated_at).total_seconds() >= older_than_seconds:
                    jobs[i] = self._transition(job, JobStatus.PENDING)
                    count += 1
        if count:
            logger.warning("Recovered %d stale processing job(s)", count)
        return count

    # ── Queries ──────────────────────────────────────────────

    def list_jobs(self, status: JobStatus | None = None) -> list[QueueJob]:
        jobs = self._snapshot()
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def get(self, job_id: str) -> Optional[QueueJob]:
        for job in self._snapshot():
            if job.id == job_id:
                return job
        return None

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._snapshot():
            counts[job.status.value] += 1
        return counts

    def close(self) -> None:
        self._conn.close()
