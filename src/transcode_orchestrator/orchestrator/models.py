"""Domain models for transcode job orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Local job lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: frozenset[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.RUNNING),
        (JobStatus.PENDING, JobStatus.FAILED),
        (JobStatus.RUNNING, JobStatus.RUNNING),
        (JobStatus.RUNNING, JobStatus.COMPLETED),
        (JobStatus.RUNNING, JobStatus.FAILED),
    },
)


class ResourceTier(str, Enum):
    """Remote resource sizing hint selected at submission."""

    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(slots=True)
class JobLogEntry:
    """One progress log line."""

    timestamp: datetime
    message: str


@dataclass(slots=True)
class Job:
    """Tracked lifecycle of one submitted transcode."""

    id: str
    input_ref: str
    resource_tier: ResourceTier
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    task_handle: str | None = None
    logs: list[JobLogEntry] = field(default_factory=list)
    outputs: dict[str, str] | None = None
    failure_reason: str | None = None
    monitoring_degraded: bool = False
    finished_at: datetime | None = None

    def copy(self) -> Job:
        """Detached copy; log entries are shared because they are never mutated."""

        return Job(
            id=self.id,
            input_ref=self.input_ref,
            resource_tier=self.resource_tier,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            task_handle=self.task_handle,
            logs=list(self.logs),
            outputs=dict(self.outputs) if self.outputs is not None else None,
            failure_reason=self.failure_reason,
            monitoring_degraded=self.monitoring_degraded,
            finished_at=self.finished_at,
        )

    def log_messages(self) -> list[str]:
        return [entry.message for entry in self.logs]


@dataclass(slots=True)
class JobSummary:
    """List view of a job, logs omitted."""

    job_id: str
    status: JobStatus
    created_at: datetime
    input_ref: str


@dataclass(slots=True)
class ContainerExit:
    """Per-container exit info reported by the execution system."""

    name: str
    exit_code: int | None
    reason: str | None = None


@dataclass(slots=True)
class RemoteTaskState:
    """Snapshot of a remote task as reported by the status provider."""

    task_handle: str
    last_status: str
    stop_code: str | None = None
    stopped_reason: str | None = None
    containers: list[ContainerExit] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.last_status.upper() in REMOTE_TERMINAL_STATUSES

    @property
    def exited_cleanly(self) -> bool:
        if self.stop_code not in (None, CLEAN_STOP_CODE):
            return False
        if not self.containers:
            return False
        return all(container.exit_code == 0 for container in self.containers)

    def failure_reason(self) -> str:
        for container in self.containers:
            if container.reason:
                return container.reason
        if self.stopped_reason:
            return self.stopped_reason
        for container in self.containers:
            if container.exit_code not in (None, 0):
                return f"Container {container.name} exited with code {container.exit_code}"
        if self.stop_code:
            return f"Task stopped with code {self.stop_code}"
        return "Task stopped without a success signal"


REMOTE_TERMINAL_STATUSES = frozenset({"STOPPED", "DELETED"})
CLEAN_STOP_CODE = "EssentialContainerExited"


@dataclass(slots=True)
class TaskRunRequest:
    """Everything the task launcher needs to start one remote transcode."""

    cluster: str
    task_definition: str
    container_name: str
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    assign_public_ip: bool = True
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ReconcileSummary:
    """Outcome of one reconciliation pass."""

    created_from_outputs: int = 0
    created_from_tasks: int = 0
    resumed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Job records created or updated; resumed monitors change no record."""

        return self.created_from_outputs + self.created_from_tasks
