"""In-process job table with per-job locking and durable snapshots."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from contextlib import ExitStack
from uuid import uuid4

from transcode_orchestrator.orchestrator.errors import (
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
)
from transcode_orchestrator.orchestrator.models import (
    ALLOWED_TRANSITIONS,
    Job,
    JobLogEntry,
    JobStatus,
    ResourceTier,
)
from transcode_orchestrator.orchestrator.repository import JobSnapshotRepository
from transcode_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

JobMutation = Callable[[Job], None]


class JobStore:
    """Job table shared by submission, monitor loops and the reconciler.

    Mutations of one job are serialized by that job's lock; the table lock only
    guards membership of the job dict. State-changing updates are written to the
    snapshot before ``update`` returns. Log-only updates are marked dirty and
    written by the periodic flusher.

    Every snapshot write happens under the write lock while the written jobs'
    locks are held, so a flush can never persist a copy older than the row it
    replaces. Lock order is job locks (sorted by id), then the write lock.
    """

    def __init__(
        self,
        repository: JobSnapshotRepository,
        *,
        flush_interval_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.flush_interval_seconds = flush_interval_seconds
        self._jobs: dict[str, Job] = {}
        self._job_locks: dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()
        self._dirty: set[str] = set()
        self._dirty_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._flush_error: PersistenceError | None = None
        self._flusher_stop = threading.Event()
        self._flusher_thread: threading.Thread | None = None

    # -- lifecycle -------------------------------------------------------------

    def load(self) -> int:
        """Populate the table from the durable snapshot."""

        loaded = self.repository.load_jobs()
        with self._table_lock:
            for job in loaded:
                self._jobs[job.id] = job
                self._job_locks.setdefault(job.id, threading.Lock())
        logger.info("Loaded %d job(s) from snapshot %s", len(loaded), self.repository.db_path)
        return len(loaded)

    def start_flusher(self) -> None:
        if self.flush_interval_seconds <= 0 or self._flusher_thread is not None:
            return
        self._flusher_stop.clear()
        self._flusher_thread = threading.Thread(
            target=self._flusher_loop,
            daemon=True,
            name="job-store-flusher",
        )
        self._flusher_thread.start()

    def close(self) -> None:
        """Stop the flusher and write any pending changes."""

        if self._flusher_thread is not None:
            self._flusher_stop.set()
            self._flusher_thread.join(timeout=15)
            self._flusher_thread = None
        self.flush()

    # -- contract --------------------------------------------------------------

    def create(self, input_ref: str, resource_tier: ResourceTier) -> Job:
        """Create a PENDING job with a fresh id."""

        now = utc_now()
        job = Job(
            id=str(uuid4()),
            input_ref=input_ref,
            resource_tier=resource_tier,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            logs=[JobLogEntry(timestamp=now, message=f"Job created for {input_ref}")],
        )
        return self.import_job(job)

    def import_job(self, job: Job) -> Job:
        """Insert a fully formed record, used by submission and reconciliation."""

        self._raise_if_poisoned()
        lock = threading.Lock()
        with lock:
            with self._table_lock:
                if job.id in self._jobs:
                    raise DuplicateJobError(job.id)
                self._jobs[job.id] = job.copy()
                self._job_locks[job.id] = lock
            try:
                with self._write_lock:
                    self.repository.save_job(job)
            except PersistenceError:
                with self._table_lock:
                    self._jobs.pop(job.id, None)
                    self._job_locks.pop(job.id, None)
                raise
        return job.copy()

    def get(self, job_id: str) -> Job:
        lock = self._lock_for(job_id)
        with lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.copy()

    def list(self) -> list[Job]:
        with self._table_lock:
            job_ids = list(self._jobs)
        jobs: list[Job] = []
        for job_id in job_ids:
            try:
                jobs.append(self.get(job_id))
            except JobNotFoundError:
                continue
        return jobs

    def find_by_task_handle(self, task_handle: str) -> Job | None:
        for job in self.list():
            if job.task_handle == task_handle:
                return job
        return None

    def update(self, job_id: str, mutation: JobMutation) -> Job:
        """Atomically apply ``mutation`` to a working copy of one job."""

        self._raise_if_poisoned()
        lock = self._lock_for(job_id)
        with lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            candidate = current.copy()
            mutation(candidate)
            _validate_mutation(before=current, after=candidate)
            if _same_snapshot(current, candidate):
                return candidate
            candidate.updated_at = utc_now()
            if candidate.status.is_terminal and candidate.finished_at is None:
                candidate.finished_at = candidate.updated_at

            if _requires_sync_flush(before=current, after=candidate) or (
                self.flush_interval_seconds <= 0
            ):
                with self._write_lock:
                    self.repository.save_job(candidate)
                self._jobs[job_id] = candidate
                with self._dirty_lock:
                    self._dirty.discard(job_id)
            else:
                self._jobs[job_id] = candidate
                with self._dirty_lock:
                    self._dirty.add(job_id)
            return candidate.copy()

    def append_log(self, job_id: str, message: str) -> Job:
        return self.update(job_id, lambda job: append_log(job, message))

    def flush(self) -> int:
        """Write every dirty job to the snapshot; returns how many were written."""

        with self._flush_lock:
            with self._dirty_lock:
                pending = sorted(self._dirty)
                self._dirty.clear()
            if not pending:
                return 0
            with self._table_lock:
                locks = [self._job_locks[job_id] for job_id in pending if job_id in self._job_locks]
            with ExitStack() as held:
                for lock in locks:
                    held.enter_context(lock)
                snapshot = [self._jobs[job_id] for job_id in pending if job_id in self._jobs]
                try:
                    with self._write_lock:
                        self.repository.save_jobs(snapshot)
                except PersistenceError:
                    with self._dirty_lock:
                        self._dirty.update(pending)
                    raise
            return len(snapshot)

    # -- internals -------------------------------------------------------------

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._job_locks.get(job_id)
            if lock is None:
                raise JobNotFoundError(job_id)
            return lock

    def _raise_if_poisoned(self) -> None:
        if self._flush_error is not None:
            raise PersistenceError(
                f"Job store is read-only after a failed snapshot flush: {self._flush_error}",
            )

    def _flusher_loop(self) -> None:
        while not self._flusher_stop.wait(timeout=self.flush_interval_seconds):
            try:
                written = self.flush()
            except PersistenceError as error:
                self._flush_error = error
                logger.critical("Snapshot flush failed, job store is now read-only: %s", error)
                return
            if written:
                logger.debug("Flushed %d job(s) to snapshot", written)


def append_log(job: Job, message: str) -> None:
    """Append one log line to a working copy."""

    job.logs.append(JobLogEntry(timestamp=utc_now(), message=message))


def _validate_mutation(*, before: Job, after: Job) -> None:
    if (
        after.id != before.id
        or after.input_ref != before.input_ref
        or after.resource_tier != before.resource_tier
        or after.created_at != before.created_at
    ):
        raise InvalidTransitionError(f"Job {before.id}: immutable fields cannot change")
    if after.status != before.status and (before.status, after.status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(
            f"Job {before.id}: transition {before.status.value} -> {after.status.value} "
            "is not allowed",
        )
    if before.task_handle is not None and after.task_handle != before.task_handle:
        raise InvalidTransitionError(f"Job {before.id}: task handle is already assigned")
    if len(after.logs) < len(before.logs) or after.logs[: len(before.logs)] != before.logs:
        raise InvalidTransitionError(f"Job {before.id}: logs are append-only")
    if after.outputs is not None and after.status is not JobStatus.COMPLETED:
        raise InvalidTransitionError(f"Job {before.id}: outputs require COMPLETED status")
    if before.monitoring_degraded and not after.monitoring_degraded:
        raise InvalidTransitionError(f"Job {before.id}: degraded monitoring never recovers")


def _requires_sync_flush(*, before: Job, after: Job) -> bool:
    return (
        before.status != after.status
        or before.task_handle != after.task_handle
        or before.monitoring_degraded != after.monitoring_degraded
    )


def _same_snapshot(before: Job, after: Job) -> bool:
    return (
        before.status == after.status
        and before.task_handle == after.task_handle
        and len(before.logs) == len(after.logs)
        and before.outputs == after.outputs
        and before.failure_reason == after.failure_reason
        and before.monitoring_degraded == after.monitoring_degraded
        and before.finished_at == after.finished_at
    )
