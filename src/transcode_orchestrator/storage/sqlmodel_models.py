"""SQLModel ORM tables for the durable job snapshot."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TranscodeJob(SQLModel, table=True):
    __tablename__ = "transcode_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_transcode_jobs_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    input_ref: str = Field(sa_column=Column(Text, nullable=False))
    resource_tier: str = Field(index=True)
    status: str = Field(index=True)
    task_handle: str | None = Field(default=None, index=True)
    outputs_json: str | None = Field(default=None, sa_column=Column(Text))
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    monitoring_degraded: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TranscodeJobLog(SQLModel, table=True):
    __tablename__ = "transcode_job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("uq_transcode_job_logs_job_seq", "job_id", "seq", unique=True),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("transcode_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    seq: int
    logged_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
