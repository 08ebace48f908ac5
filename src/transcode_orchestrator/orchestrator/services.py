"""Use-case services for job submission and queries."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from transcode_orchestrator.config import LaunchSettings
from transcode_orchestrator.orchestrator.backend.base import TaskLauncher
from transcode_orchestrator.orchestrator.errors import LaunchError, LaunchTimeoutError
from transcode_orchestrator.orchestrator.models import (
    Job,
    JobStatus,
    JobSummary,
    ReconcileSummary,
    ResourceTier,
    TaskRunRequest,
)
from transcode_orchestrator.orchestrator.monitor import MonitorSupervisor
from transcode_orchestrator.orchestrator.reconciler import Reconciler
from transcode_orchestrator.orchestrator.store import JobStore, append_log

logger = logging.getLogger(__name__)


class JobOrchestrationService:
    """Submission path plus the read-only job query facade."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        launcher: TaskLauncher,
        supervisor: MonitorSupervisor,
        reconciler: Reconciler,
        launch: LaunchSettings,
        min_terminal_log_lines: int = 3,
    ) -> None:
        self.store = store
        self.launcher = launcher
        self.supervisor = supervisor
        self.reconciler = reconciler
        self.launch = launch
        self.min_terminal_log_lines = min_terminal_log_lines
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="task-launch")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def submit_job(self, input_ref: str, resource_tier: ResourceTier | str) -> Job:
        """Create a job, launch its remote task and start monitoring it.

        Launch failures leave the job FAILED with the reason in its logs and are
        re-raised with ``job_id`` set.
        """

        normalized_ref = (input_ref or "").strip()
        if not normalized_ref:
            raise ValueError("input_ref must not be empty.")
        tier = parse_tier(resource_tier)

        job = self.store.create(normalized_ref, tier)
        request = self._run_request(job)
        logger.info("Launching job %s with %s", job.id, request.task_definition)
        try:
            task_handle = self._launch(request)
        except LaunchError as error:
            self._fail_launch(job.id, error.reason)
            error.job_id = job.id
            raise
        except Exception as error:
            reason = f"Failed to start task: {error}"
            self._fail_launch(job.id, reason)
            raise LaunchError(reason, job_id=job.id) from error

        def _start(current: Job) -> None:
            current.task_handle = task_handle
            current.status = JobStatus.RUNNING
            append_log(current, f"Started task: {task_handle}")

        job = self.store.update(job.id, _start)
        self.supervisor.watch(job.id)
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job.status.is_terminal and len(job.logs) < self.min_terminal_log_lines:
            job = self.store.update(job_id, self._ensure_minimal_logs)
        return job

    def list_jobs(self) -> list[JobSummary]:
        jobs = sorted(self.store.list(), key=lambda job: (job.created_at, job.id), reverse=True)
        return [
            JobSummary(
                job_id=job.id,
                status=job.status,
                created_at=job.created_at,
                input_ref=job.input_ref,
            )
            for job in jobs
        ]

    def reconcile(self) -> ReconcileSummary:
        return self.reconciler.reconcile()

    def _run_request(self, job: Job) -> TaskRunRequest:
        return TaskRunRequest(
            cluster=self.launch.cluster,
            task_definition=self.launch.tier_task_definitions[job.resource_tier.value],
            container_name=self.launch.container_name,
            subnets=self.launch.subnets,
            security_groups=self.launch.security_groups,
            assign_public_ip=self.launch.assign_public_ip,
            environment={
                "JOB_ID": job.id,
                "KEY": job.input_ref,
                "RESOURCE_TIER": job.resource_tier.value,
            },
        )

    def _launch(self, request: TaskRunRequest) -> str:
        future = self._executor.submit(self.launcher.run, request)
        timeout = self.launch.launch_timeout_seconds
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as error:
            job_id = request.environment["JOB_ID"]
            future.add_done_callback(lambda done: self._record_late_launch(job_id, done))
            raise LaunchTimeoutError(
                f"Task launch timed out after {timeout:g} seconds",
                code="LaunchTimeout",
            ) from error

    def _record_late_launch(self, job_id: str, future: Future[str]) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        task_handle = future.result()
        logger.warning("Job %s: launch returned %s after timing out", job_id, task_handle)
        self.store.append_log(
            job_id,
            f"Task {task_handle} started after the launch timed out; it is not monitored",
        )

    def _fail_launch(self, job_id: str, reason: str) -> None:
        def _fail(current: Job) -> None:
            append_log(current, f"Error starting task: {reason}")
            current.status = JobStatus.FAILED
            current.failure_reason = reason

        self.store.update(job_id, _fail)
        logger.warning("Job %s failed to launch: %s", job_id, reason)

    def _ensure_minimal_logs(self, job: Job) -> None:
        present = set(job.log_messages())
        for message in _summary_lines(job):
            if len(job.logs) >= self.min_terminal_log_lines:
                return
            if message not in present:
                append_log(job, message)
                present.add(message)


def parse_tier(value: ResourceTier | str) -> ResourceTier:
    if isinstance(value, ResourceTier):
        return value
    try:
        return ResourceTier((value or "").strip().lower())
    except ValueError as error:
        allowed = ", ".join(tier.value for tier in ResourceTier)
        raise ValueError(f"Unknown resource tier {value!r}. Expected one of: {allowed}.") from error


def _summary_lines(job: Job) -> list[str]:
    lines = [f"Job created for {job.input_ref}"]
    if job.task_handle:
        lines.append(f"Started task: {job.task_handle}")
    if job.status is JobStatus.COMPLETED:
        lines.append("Task completed successfully")
        if job.outputs:
            lines.append(f"Outputs available at {job.outputs['master']}")
    else:
        lines.append(f"Failure reason: {job.failure_reason or 'unknown'}")
    return lines
