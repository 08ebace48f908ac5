"""Collaborator interfaces and bundled local implementations."""

from transcode_orchestrator.orchestrator.backend.base import (
    ObjectStorage,
    TaskLauncher,
    TaskStatusProvider,
)
from transcode_orchestrator.orchestrator.backend.local_storage import LocalObjectStorage
from transcode_orchestrator.orchestrator.backend.simulated import SimulatedExecutionBackend

__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "SimulatedExecutionBackend",
    "TaskLauncher",
    "TaskStatusProvider",
]
