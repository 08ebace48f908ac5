"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from transcode_orchestrator.config import Settings
from transcode_orchestrator.orchestrator.models import Job, JobStatus
from transcode_orchestrator.orchestrator.runtime import OrchestratorRuntime, open_runtime


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    input_ref: str
    resource_tier: str
    wait: bool = False
    wait_timeout_seconds: float | None = None


@dataclass(slots=True)
class JobShowCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None = None
    limit: int = 50


@dataclass(slots=True)
class JobReconcileCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobServeCommand:
    """CLI input for the long-running orchestrator process."""

    db_path: Path | None
    duration_seconds: float = 0.0


class JobsCliController:
    """Coordinates submission, inspection and reconciliation CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.service.submit_job(command.input_ref, command.resource_tier)
            lines = [
                "Job submitted: "
                f"job_id={job.id} status={job.status.value} tier={job.resource_tier.value}",
                f"Task: {job.task_handle}",
            ]
            if not command.wait:
                return lines
            finished = runtime.supervisor.wait(job.id, timeout=command.wait_timeout_seconds)
            job = runtime.service.get_job(job.id)
        if not finished:
            lines.append(f"Still {job.status.value} after waiting; check later with `jobs show`.")
            return lines
        return [*lines, *_render_job(job)]

    def show(self, command: JobShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.service.get_job(command.job_id)
        if command.output_format == "json":
            return [json.dumps(_job_payload(job), indent=2, ensure_ascii=False)]
        return _render_job(job)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with open_runtime(settings) as runtime:
            summaries = runtime.service.list_jobs()
        if status_filter is not None:
            summaries = [summary for summary in summaries if summary.status is status_filter]
        summaries = summaries[: command.limit]

        lines = [f"Jobs: {len(summaries)}"]
        for summary in summaries:
            lines.append(
                f"  {summary.job_id} status={summary.status.value} "
                f"created_at={summary.created_at.isoformat()} input_ref={summary.input_ref}",
            )
        return lines

    def reconcile(self, command: JobReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            summary = runtime.service.reconcile()
        lines = [
            "Reconciliation summary: "
            f"created_or_updated={summary.total} "
            f"from_outputs={summary.created_from_outputs} "
            f"from_tasks={summary.created_from_tasks} "
            f"resumed={summary.resumed}",
        ]
        lines.extend(f"  error: {error}" for error in summary.errors)
        return lines

    def serve(self, command: JobServeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with OrchestratorRuntime(settings) as runtime:
            runtime.start()
            runtime.serve_forever(duration_seconds=command.duration_seconds)
            watched = runtime.supervisor.active_job_ids()
            jobs = runtime.store.list()
        running = sum(1 for job in jobs if job.status is JobStatus.RUNNING)
        return [
            f"Orchestrator stopped: jobs={len(jobs)} running={running} "
            f"monitors_at_shutdown={len(watched)}",
        ]


def _render_job(job: Job) -> list[str]:
    lines = [
        f"Job: {job.id}",
        f"Status: {job.status.value}",
        f"Input: {job.input_ref}",
        f"Tier: {job.resource_tier.value}",
        f"Task: {job.task_handle or '-'}",
        f"Created: {job.created_at.isoformat()}",
        f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
        f"Failure reason: {job.failure_reason or '-'}",
    ]
    if job.monitoring_degraded:
        lines.append("Monitoring: degraded")
    if job.outputs:
        lines.append("Outputs:")
        lines.extend(f"  {name}: {key}" for name, key in job.outputs.items())
    lines.append(f"Logs: {len(job.logs)}")
    lines.extend(f"  {entry.timestamp.isoformat()} {entry.message}" for entry in job.logs)
    return lines


def _job_payload(job: Job) -> dict[str, object]:
    return {
        "id": job.id,
        "input_ref": job.input_ref,
        "resource_tier": job.resource_tier.value,
        "status": job.status.value,
        "task_handle": job.task_handle,
        "created_at": job.created_at.isoformat(),
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "failure_reason": job.failure_reason,
        "monitoring_degraded": job.monitoring_degraded,
        "outputs": job.outputs,
        "logs": [
            {"timestamp": entry.timestamp.isoformat(), "message": entry.message}
            for entry in job.logs
        ],
    }


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().upper())
    except ValueError as error:
        allowed = ", ".join(status.value.lower() for status in JobStatus)
        raise ValueError(f"Unsupported status: {value!r}. Allowed: {allowed}") from error
