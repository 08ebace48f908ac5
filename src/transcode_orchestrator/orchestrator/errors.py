"""Exceptions raised by the job orchestration engine."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class JobNotFoundError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class DuplicateJobError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already exists: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(OrchestratorError):
    """A mutation tried to break a job invariant."""


class PersistenceError(OrchestratorError):
    """The durable snapshot could not be written."""


class LaunchError(OrchestratorError):
    """The remote execution system refused to start work."""

    def __init__(self, reason: str, *, code: str | None = None, job_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.job_id = job_id


class LaunchTimeoutError(LaunchError):
    """Launch did not return within the configured timeout."""


class StatusQueryError(OrchestratorError):
    """Querying remote task status failed."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class StatusPermissionError(StatusQueryError):
    """The orchestrator lacks rights to observe the task."""


class TaskNotFoundError(StatusQueryError):
    """The task handle no longer resolves on the remote side."""
