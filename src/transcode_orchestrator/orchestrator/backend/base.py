"""Collaborator interfaces consumed by the orchestration core."""

from __future__ import annotations

from typing import Protocol

from transcode_orchestrator.orchestrator.models import RemoteTaskState, TaskRunRequest


class ObjectStorage(Protocol):
    """Key/value object storage with prefix listing."""

    def put(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``."""

    def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key`` or raise ``KeyError``."""

    def list_prefixes(self, prefix: str) -> list[str]:
        """Return common prefixes (``prefix/<name>/``) directly below ``prefix``."""


class TaskLauncher(Protocol):
    """Starts remote units of work."""

    def run(self, request: TaskRunRequest) -> str:
        """Start one task and return its handle, or raise ``LaunchError``."""


class TaskStatusProvider(Protocol):
    """Reports remote task state."""

    def describe(self, cluster: str, task_handle: str) -> RemoteTaskState:
        """Describe one task, raising ``StatusQueryError`` subclasses on failure."""

    def list_active(self, cluster: str) -> list[str]:
        """Return handles of tasks that are not yet stopped."""
