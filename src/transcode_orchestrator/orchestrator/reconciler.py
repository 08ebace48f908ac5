"""Rebuild local job records from remote ground truth."""

from __future__ import annotations

import logging
import threading

from transcode_orchestrator.orchestrator.backend.base import ObjectStorage, TaskStatusProvider
from transcode_orchestrator.orchestrator.errors import DuplicateJobError
from transcode_orchestrator.orchestrator.models import (
    Job,
    JobLogEntry,
    JobStatus,
    ReconcileSummary,
    RemoteTaskState,
    ResourceTier,
)
from transcode_orchestrator.orchestrator.monitor import MonitorSupervisor
from transcode_orchestrator.orchestrator.outputs import (
    NamespaceMatch,
    derive_outputs,
    matches_namespace,
    namespace_from_prefix,
    reconstruct_input_ref,
)
from transcode_orchestrator.orchestrator.store import JobStore, append_log
from transcode_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_LAUNCH_REASON = "Launch was interrupted by an orchestrator restart"


class Reconciler:
    """Imports output namespaces and active tasks the store does not know about.

    Three scans run under one lock so concurrent ``reconcile`` calls never race
    each other into duplicate imports:

    - completed outputs: every namespace under the output prefix that no tracked
      job maps to becomes a COMPLETED job;
    - active tasks: every untracked remote task becomes a RUNNING job with a
      monitor attached, using the ``JOB_ID``/``KEY`` environment set at launch;
    - resume: tracked RUNNING jobs without a live monitor get one.

    A scan that fails on an adapter error is recorded in the summary and does
    not prevent the other scans from running.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        storage: ObjectStorage,
        status_provider: TaskStatusProvider,
        supervisor: MonitorSupervisor,
        cluster: str,
        output_prefix: str = "output/",
        raw_prefix: str = "raw/",
        input_extension: str = ".mp4",
        namespace_match: NamespaceMatch = NamespaceMatch.EXACT,
    ) -> None:
        self.store = store
        self.storage = storage
        self.status_provider = status_provider
        self.supervisor = supervisor
        self.cluster = cluster
        self.output_prefix = output_prefix
        self.raw_prefix = raw_prefix
        self.input_extension = input_extension
        self.namespace_match = namespace_match
        self._lock = threading.Lock()

    def reconcile(self) -> ReconcileSummary:
        with self._lock:
            summary = ReconcileSummary()
            try:
                summary.created_from_outputs = self._scan_outputs()
            except Exception as error:  # noqa: BLE001
                logger.warning("Output scan failed: %s", error)
                summary.errors.append(f"output scan: {error}")
            try:
                summary.created_from_tasks = self._scan_active_tasks()
            except Exception as error:  # noqa: BLE001
                logger.warning("Active task scan failed: %s", error)
                summary.errors.append(f"active task scan: {error}")
            summary.resumed = self.resume_running()

        logger.info(
            "Reconciliation finished: outputs=%d tasks=%d resumed=%d errors=%d",
            summary.created_from_outputs,
            summary.created_from_tasks,
            summary.resumed,
            len(summary.errors),
        )
        return summary

    def fail_interrupted_launches(self) -> int:
        """Fail PENDING jobs left without a task handle by a previous process.

        Only safe before the orchestrator accepts submissions, since an
        in-flight launch looks exactly the same.
        """

        failed = 0
        for job in self.store.list():
            if job.status is not JobStatus.PENDING or job.task_handle is not None:
                continue

            def _fail(current: Job) -> None:
                append_log(current, f"Failure reason: {INTERRUPTED_LAUNCH_REASON}")
                current.status = JobStatus.FAILED
                current.failure_reason = INTERRUPTED_LAUNCH_REASON

            self.store.update(job.id, _fail)
            failed += 1
        if failed:
            logger.warning("Marked %d interrupted launch(es) as failed", failed)
        return failed

    def _scan_outputs(self) -> int:
        prefixes = self.storage.list_prefixes(self.output_prefix)
        known_refs = [job.input_ref for job in self.store.list()]
        created = 0
        for prefix in prefixes:
            namespace = namespace_from_prefix(prefix, output_prefix=self.output_prefix)
            if not namespace:
                continue
            if any(
                matches_namespace(input_ref, namespace, mode=self.namespace_match)
                for input_ref in known_refs
            ):
                continue
            job = self._completed_job_for(namespace)
            try:
                self.store.import_job(job)
            except DuplicateJobError:
                continue
            known_refs.append(job.input_ref)
            created += 1
            logger.info("Imported completed outputs %s as job %s", namespace, job.id)
        return created

    def _scan_active_tasks(self) -> int:
        created = 0
        for task_handle in self.status_provider.list_active(self.cluster):
            if self.store.find_by_task_handle(task_handle) is not None:
                continue
            state = self._describe_for_import(task_handle)
            job = self._running_job_for(task_handle, state)
            try:
                self.store.import_job(job)
            except DuplicateJobError:
                logger.warning(
                    "Active task %s claims job %s which is already tracked with another handle",
                    task_handle,
                    job.id,
                )
                continue
            self.supervisor.watch(job.id)
            created += 1
            logger.info("Imported active task %s as job %s", task_handle, job.id)
        return created

    def resume_running(self) -> int:
        """Attach monitors to tracked RUNNING jobs that have none."""

        resumed = 0
        for job in self.store.list():
            if (
                job.status is not JobStatus.RUNNING
                or job.task_handle is None
                or job.monitoring_degraded
            ):
                continue
            if self.supervisor.watch(job.id):
                resumed += 1
        return resumed

    def _describe_for_import(self, task_handle: str) -> RemoteTaskState | None:
        try:
            return self.status_provider.describe(self.cluster, task_handle)
        except Exception as error:  # noqa: BLE001
            logger.warning("Cannot read metadata of active task %s: %s", task_handle, error)
            return None

    def _completed_job_for(self, namespace: str) -> Job:
        now = utc_now()
        input_ref = reconstruct_input_ref(
            namespace,
            raw_prefix=self.raw_prefix,
            extension=self.input_extension,
        )
        outputs = derive_outputs(input_ref, output_prefix=self.output_prefix)
        # Tier is not recoverable from outputs.
        return Job(
            id=f"output-{namespace}",
            input_ref=input_ref,
            resource_tier=ResourceTier.STANDARD,
            status=JobStatus.COMPLETED,
            created_at=now,
            updated_at=now,
            logs=[
                JobLogEntry(
                    timestamp=now,
                    message=f"Job imported from existing outputs at {outputs['master']}",
                ),
                JobLogEntry(timestamp=now, message="Task status: STOPPED"),
                JobLogEntry(timestamp=now, message="Task completed successfully"),
            ],
            outputs=outputs,
            finished_at=now,
        )

    def _running_job_for(self, task_handle: str, state: RemoteTaskState | None) -> Job:
        now = utc_now()
        environment = state.environment if state is not None else {}
        suffix = task_handle.rsplit("/", 1)[-1]
        job_id = environment.get("JOB_ID", "").strip() or f"task-{suffix}"
        input_ref = environment.get("KEY", "").strip()
        logs = [JobLogEntry(timestamp=now, message=f"Job recovered from active task {task_handle}")]
        if not input_ref:
            input_ref = f"unknown/{suffix}"
            logs.append(
                JobLogEntry(
                    timestamp=now,
                    message="Input reference could not be recovered from task metadata",
                ),
            )
        if state is not None:
            logs.append(JobLogEntry(timestamp=now, message=f"Task status: {state.last_status}"))
        return Job(
            id=job_id,
            input_ref=input_ref,
            resource_tier=_tier_or_default(environment.get("RESOURCE_TIER")),
            status=JobStatus.RUNNING,
            created_at=now,
            updated_at=now,
            task_handle=task_handle,
            logs=logs,
        )


def _tier_or_default(value: str | None) -> ResourceTier:
    try:
        return ResourceTier((value or "").strip().lower())
    except ValueError:
        return ResourceTier.STANDARD
