"""Durable job snapshot backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from transcode_orchestrator.orchestrator.errors import PersistenceError
from transcode_orchestrator.orchestrator.models import (
    Job,
    JobLogEntry,
    JobStatus,
    ResourceTier,
)
from transcode_orchestrator.storage.alembic_runner import upgrade_head
from transcode_orchestrator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
)
from transcode_orchestrator.storage.sqlmodel_models import TranscodeJob, TranscodeJobLog

logger = logging.getLogger(__name__)


class JobSnapshotRepository:
    """Writes and reads the flat job record set.

    Every ``save_jobs`` call is one SQLite transaction, so a crash leaves either
    the previous or the new snapshot of each job, never a partial record. Log rows
    are append-only and keyed by ``(job_id, seq)``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def save_job(self, job: Job) -> None:
        self.save_jobs([job])

    def save_jobs(self, jobs: Iterable[Job]) -> None:
        """Upsert job rows and append unseen log lines in a single transaction."""

        try:
            with Session(self.engine) as session:
                for job in jobs:
                    self._upsert_job(session=session, job=job)
                session.commit()
        except SQLAlchemyError as error:
            raise PersistenceError(f"Failed to persist job snapshot: {error}") from error

    def load_jobs(self) -> list[Job]:
        """Load every persisted job with logs in insertion order."""

        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(TranscodeJob).order_by(col(TranscodeJob.created_at).asc()),
                ).all()
                log_rows = session.exec(
                    select(TranscodeJobLog).order_by(
                        col(TranscodeJobLog.job_id).asc(),
                        col(TranscodeJobLog.seq).asc(),
                    ),
                ).all()
        except SQLAlchemyError as error:
            raise PersistenceError(f"Failed to load job snapshot: {error}") from error

        logs_by_job: dict[str, list[JobLogEntry]] = {}
        for log_row in log_rows:
            logs_by_job.setdefault(log_row.job_id, []).append(
                JobLogEntry(
                    timestamp=to_utc_aware_datetime(log_row.logged_at),
                    message=log_row.message,
                ),
            )
        return [_to_job(row, logs_by_job.get(row.job_id, [])) for row in rows]

    def count_logs(self, *, job_id: str) -> int:
        with Session(self.engine) as session:
            return _persisted_log_count(session=session, job_id=job_id)

    def _upsert_job(self, *, session: Session, job: Job) -> None:
        row = session.get(TranscodeJob, job.id)
        if row is None:
            row = TranscodeJob(
                job_id=job.id,
                input_ref=job.input_ref,
                resource_tier=job.resource_tier.value,
                status=job.status.value,
                created_at=to_db_datetime(job.created_at),
                updated_at=to_db_datetime(job.updated_at),
            )
        elif to_db_datetime(row.updated_at) > to_db_datetime(job.updated_at):
            logger.warning("Skipping stale snapshot of job %s", job.id)
            return
        row.status = job.status.value
        row.task_handle = job.task_handle
        row.outputs_json = (
            json.dumps(job.outputs, ensure_ascii=False, sort_keys=True)
            if job.outputs is not None
            else None
        )
        row.failure_reason = job.failure_reason
        row.monitoring_degraded = job.monitoring_degraded
        row.updated_at = to_db_datetime(job.updated_at)
        row.finished_at = to_db_datetime(job.finished_at) if job.finished_at is not None else None
        session.add(row)
        session.flush()

        persisted = _persisted_log_count(session=session, job_id=job.id)
        for seq, entry in enumerate(job.logs[persisted:], start=persisted):
            session.add(
                TranscodeJobLog(
                    job_id=job.id,
                    seq=seq,
                    logged_at=to_db_datetime(entry.timestamp),
                    message=entry.message,
                ),
            )


def _persisted_log_count(*, session: Session, job_id: str) -> int:
    count = session.exec(
        select(func.count()).select_from(TranscodeJobLog).where(TranscodeJobLog.job_id == job_id),
    ).one()
    return int(count)


def _to_job(row: TranscodeJob, logs: list[JobLogEntry]) -> Job:
    return Job(
        id=row.job_id,
        input_ref=row.input_ref,
        resource_tier=ResourceTier(row.resource_tier),
        status=JobStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        task_handle=row.task_handle,
        logs=logs,
        outputs=json.loads(row.outputs_json) if row.outputs_json else None,
        failure_reason=row.failure_reason,
        monitoring_degraded=bool(row.monitoring_degraded),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
