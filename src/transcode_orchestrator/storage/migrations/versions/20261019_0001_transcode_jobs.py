"""Initial transcode job snapshot schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "transcode_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("input_ref", sa.Text(), nullable=False),
        sa.Column("resource_tier", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("task_handle", sa.String(), nullable=True),
        sa.Column("outputs_json", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "monitoring_degraded",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_transcode_jobs_resource_tier", "transcode_jobs", ["resource_tier"])
    op.create_index("ix_transcode_jobs_status", "transcode_jobs", ["status"])
    op.create_index("ix_transcode_jobs_task_handle", "transcode_jobs", ["task_handle"])
    op.create_index(
        "idx_transcode_jobs_status_created",
        "transcode_jobs",
        ["status", "created_at"],
    )

    op.create_table(
        "transcode_job_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["transcode_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transcode_job_logs_job_id", "transcode_job_logs", ["job_id"])
    op.create_index(
        "uq_transcode_job_logs_job_seq",
        "transcode_job_logs",
        ["job_id", "seq"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_transcode_job_logs_job_seq", table_name="transcode_job_logs")
    op.drop_index("ix_transcode_job_logs_job_id", table_name="transcode_job_logs")
    op.drop_table("transcode_job_logs")
    op.drop_index("idx_transcode_jobs_status_created", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_task_handle", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_status", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_resource_tier", table_name="transcode_jobs")
    op.drop_table("transcode_jobs")
