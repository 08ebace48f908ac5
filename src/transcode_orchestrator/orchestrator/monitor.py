"""Per-job monitor loops that drive local state from remote task status."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum

from transcode_orchestrator.orchestrator.backend.base import TaskStatusProvider
from transcode_orchestrator.orchestrator.errors import (
    JobNotFoundError,
    OrchestratorError,
    PersistenceError,
)
from transcode_orchestrator.orchestrator.failure_classifier import (
    StatusFailureClass,
    classify_status_failure,
)
from transcode_orchestrator.orchestrator.models import Job, JobStatus, RemoteTaskState
from transcode_orchestrator.orchestrator.outputs import derive_outputs
from transcode_orchestrator.orchestrator.store import JobStore, append_log

logger = logging.getLogger(__name__)

DEGRADED_PERMISSION_WARNING = (
    "Warning: Limited monitoring due to insufficient permissions to describe tasks. "
    "The task may still be running correctly."
)

NOT_FOUND_LOG_PREFIX = "Task not found ("
RETRY_LOG_PREFIX = "Status query failed"
_DIAGNOSTIC_LOG_PREFIXES = (NOT_FOUND_LOG_PREFIX, RETRY_LOG_PREFIX)


class NotFoundResolution(str, Enum):
    """What a vanished task handle is assumed to mean."""

    HEURISTIC = "heuristic"
    COMPLETED = "completed"
    FAILED = "failed"


class PollOutcome(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    FAILED = "failed"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass(slots=True)
class MonitorPolicy:
    """Polling cadence and failure policy shared by all monitor loops."""

    poll_interval_seconds: float = 10.0
    poll_jitter_ratio: float = 0.2
    not_found_threshold: int = 3
    not_found_resolution: NotFoundResolution = NotFoundResolution.HEURISTIC
    not_found_min_logs_for_completion: int = 5
    max_consecutive_errors: int = 10
    output_prefix: str = "output/"


class JobMonitor:
    """Watches one job's remote task until it reaches a terminal state.

    ``poll_once`` performs exactly one tick and is what tests drive directly;
    ``run`` repeats it with jittered sleeps until the job is settled, monitoring
    is degraded, or ``stop_event`` is set.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        store: JobStore,
        status_provider: TaskStatusProvider,
        cluster: str,
        policy: MonitorPolicy,
        rng: random.Random | None = None,
    ) -> None:
        self.job_id = job_id
        self.store = store
        self.status_provider = status_provider
        self.cluster = cluster
        self.policy = policy
        self._random = rng or random.Random()  # noqa: S311
        self.consecutive_not_found = 0
        self.consecutive_errors = 0

    def run(self, stop_event: threading.Event) -> PollOutcome:
        while True:
            if stop_event.wait(timeout=self.next_delay()):
                return PollOutcome.STOPPED
            try:
                outcome = self.poll_once()
            except PersistenceError as error:
                logger.critical("Job %s: monitoring stopped, snapshot write failed: %s",
                                self.job_id, error)
                return PollOutcome.STOPPED
            except OrchestratorError:
                logger.exception("Job %s: monitoring stopped on store error", self.job_id)
                return PollOutcome.STOPPED
            if outcome is not PollOutcome.CONTINUE:
                return outcome

    def next_delay(self) -> float:
        ratio = max(0.0, self.policy.poll_jitter_ratio)
        factor = 1.0 + self._random.uniform(-ratio, ratio)
        return max(0.0, self.policy.poll_interval_seconds * factor)

    def poll_once(self) -> PollOutcome:
        """Query remote status once and apply the resulting transition."""

        try:
            job = self.store.get(self.job_id)
        except JobNotFoundError:
            logger.warning("Job %s disappeared from the store, monitor exits", self.job_id)
            return PollOutcome.STOPPED
        settled = _settled_outcome(job)
        if settled is not None:
            return settled
        if job.task_handle is None:
            logger.warning("Job %s has no task handle to monitor", self.job_id)
            return PollOutcome.STOPPED

        try:
            state = self.status_provider.describe(self.cluster, job.task_handle)
        except Exception as error:  # noqa: BLE001
            return self._handle_query_failure(job=job, error=error)

        self.consecutive_not_found = 0
        self.consecutive_errors = 0
        logger.debug("Job %s: task %s status %s", self.job_id, job.task_handle, state.last_status)
        if state.is_terminal:
            return self._finish(state)
        self.store.update(self.job_id, lambda current: _observe_active(current, state))
        return PollOutcome.CONTINUE

    def _finish(self, state: RemoteTaskState) -> PollOutcome:
        if state.exited_cleanly:
            output_prefix = self.policy.output_prefix

            def _complete(job: Job) -> None:
                append_log(job, f"Task status: {state.last_status}")
                append_log(job, "Task completed successfully")
                job.status = JobStatus.COMPLETED
                job.outputs = derive_outputs(job.input_ref, output_prefix=output_prefix)

            self.store.update(self.job_id, _complete)
            logger.info("Job %s completed successfully", self.job_id)
            return PollOutcome.COMPLETED

        reason = state.failure_reason()

        def _fail(job: Job) -> None:
            append_log(job, f"Task status: {state.last_status}")
            if state.stopped_reason:
                append_log(job, f"Task stopped reason: {state.stopped_reason}")
            append_log(job, f"Failure reason: {reason}")
            job.status = JobStatus.FAILED
            job.failure_reason = reason

        self.store.update(self.job_id, _fail)
        logger.info("Job %s failed: %s", self.job_id, reason)
        return PollOutcome.FAILED

    def _handle_query_failure(self, *, job: Job, error: BaseException) -> PollOutcome:
        classification = classify_status_failure(error)
        if classification.failure_class is StatusFailureClass.NOT_FOUND:
            return self._handle_not_found(job)

        self.consecutive_not_found = 0
        if classification.failure_class is StatusFailureClass.PERMISSION:
            logger.warning(
                "Job %s: status query not permitted, degrading monitoring (%s)",
                self.job_id,
                classification.to_log_details(),
            )
            self._degrade(job=job, warning=DEGRADED_PERMISSION_WARNING)
            return PollOutcome.DEGRADED

        self.consecutive_errors += 1
        logger.warning(
            "Job %s: status query failed (%d in a row): %s",
            self.job_id,
            self.consecutive_errors,
            error,
        )
        limit = self.policy.max_consecutive_errors
        if limit > 0 and self.consecutive_errors >= limit:
            self._degrade(
                job=job,
                warning=(
                    f"Warning: Task status is unknown after {self.consecutive_errors} failed "
                    "status queries. The task may still be running correctly."
                ),
                last_error=str(error),
            )
            return PollOutcome.DEGRADED
        self.store.append_log(self.job_id, f"{RETRY_LOG_PREFIX}, will retry: {error}")
        return PollOutcome.CONTINUE

    def _handle_not_found(self, job: Job) -> PollOutcome:
        self.consecutive_errors = 0
        self.consecutive_not_found += 1
        threshold = max(2, self.policy.not_found_threshold)
        handle = job.task_handle
        if self.consecutive_not_found < threshold:
            self.store.append_log(
                self.job_id,
                f"{NOT_FOUND_LOG_PREFIX}{self.consecutive_not_found}/{threshold}): {handle}, "
                "waiting for the execution system to catch up",
            )
            return PollOutcome.CONTINUE

        if self._assume_completed(job):
            output_prefix = self.policy.output_prefix

            def _complete(current: Job) -> None:
                append_log(
                    current,
                    "Task is no longer reported by the execution system; "
                    "assuming it completed after the observed progress",
                )
                current.status = JobStatus.COMPLETED
                current.outputs = derive_outputs(current.input_ref, output_prefix=output_prefix)

            self.store.update(self.job_id, _complete)
            logger.warning("Job %s: task %s vanished, assumed completed", self.job_id, handle)
            return PollOutcome.COMPLETED

        reason = "Task not found. It may have been deleted or failed to start."

        def _fail(current: Job) -> None:
            append_log(current, reason)
            current.status = JobStatus.FAILED
            current.failure_reason = reason

        self.store.update(self.job_id, _fail)
        logger.warning("Job %s: task %s vanished, assumed failed", self.job_id, handle)
        return PollOutcome.FAILED

    def _assume_completed(self, job: Job) -> bool:
        resolution = self.policy.not_found_resolution
        if resolution is NotFoundResolution.COMPLETED:
            return True
        if resolution is NotFoundResolution.FAILED:
            return False
        return _progress_log_count(job) >= self.policy.not_found_min_logs_for_completion

    def _degrade(self, *, job: Job, warning: str, last_error: str | None = None) -> None:
        handle = job.task_handle

        def _mark(current: Job) -> None:
            if current.monitoring_degraded:
                return
            if last_error is not None:
                append_log(current, f"{RETRY_LOG_PREFIX}: {last_error}")
            append_log(current, warning)
            append_log(
                current,
                f"You can manually check the status of this task using task handle: {handle}",
            )
            current.monitoring_degraded = True

        self.store.update(self.job_id, _mark)


class MonitorSupervisor:
    """Owns the monitor threads and guarantees at most one per job."""

    def __init__(
        self,
        *,
        store: JobStore,
        status_provider: TaskStatusProvider,
        cluster: str,
        policy: MonitorPolicy,
    ) -> None:
        self.store = store
        self.status_provider = status_provider
        self.cluster = cluster
        self.policy = policy
        self._threads: dict[str, threading.Thread] = {}
        self._outcomes: dict[str, PollOutcome] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()

    def watch(self, job_id: str) -> bool:
        """Start a monitor for ``job_id`` unless one is already running."""

        with self._lock:
            if self._stop.is_set():
                return False
            existing = self._threads.get(job_id)
            if existing is not None and existing.is_alive():
                return False
            monitor = JobMonitor(
                job_id=job_id,
                store=self.store,
                status_provider=self.status_provider,
                cluster=self.cluster,
                policy=self.policy,
            )
            thread = threading.Thread(
                target=self._run_monitor,
                args=(monitor,),
                daemon=True,
                name=f"job-monitor-{job_id[:8]}",
            )
            self._threads[job_id] = thread
            self._outcomes.pop(job_id, None)
            thread.start()
        logger.info("Monitoring started for job %s", job_id)
        return True

    def is_watching(self, job_id: str) -> bool:
        with self._lock:
            thread = self._threads.get(job_id)
            return thread is not None and thread.is_alive()

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(job_id for job_id, thread in self._threads.items() if thread.is_alive())

    def outcome(self, job_id: str) -> PollOutcome | None:
        with self._lock:
            return self._outcomes.get(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until the monitor of ``job_id`` exits; False on timeout."""

        with self._lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def stop_all(self, timeout: float = 15.0) -> None:
        self._stop.set()
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=timeout)
        logger.info("Stopped %d monitor(s)", len(threads))

    def _run_monitor(self, monitor: JobMonitor) -> None:
        outcome = PollOutcome.STOPPED
        try:
            outcome = monitor.run(self._stop)
        except Exception:
            logger.exception("Monitor for job %s crashed", monitor.job_id)
        finally:
            with self._lock:
                if self._threads.get(monitor.job_id) is threading.current_thread():
                    del self._threads[monitor.job_id]
                self._outcomes[monitor.job_id] = outcome
            logger.info("Monitoring finished for job %s: %s", monitor.job_id, outcome.value)


def _observe_active(job: Job, state: RemoteTaskState) -> None:
    append_log(job, f"Task status: {state.last_status}")
    if state.stopped_reason:
        append_log(job, f"Task stopped reason: {state.stopped_reason}")
    for container in state.containers:
        if container.reason:
            append_log(job, f"Container reason: {container.reason}")
    job.status = JobStatus.RUNNING


def _settled_outcome(job: Job) -> PollOutcome | None:
    if job.status is JobStatus.COMPLETED:
        return PollOutcome.COMPLETED
    if job.status is JobStatus.FAILED:
        return PollOutcome.FAILED
    if job.monitoring_degraded:
        return PollOutcome.DEGRADED
    return None


def _progress_log_count(job: Job) -> int:
    """Count log lines that record job progress, not the monitor's own misses and retries."""

    return sum(1 for entry in job.logs if not entry.message.startswith(_DIAGNOSTIC_LOG_PREFIXES))
