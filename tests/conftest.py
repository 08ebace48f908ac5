"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from transcode_orchestrator.config import LaunchSettings
from transcode_orchestrator.orchestrator.models import (
    ContainerExit,
    Job,
    JobStatus,
    RemoteTaskState,
    ResourceTier,
    TaskRunRequest,
)
from transcode_orchestrator.orchestrator.monitor import MonitorPolicy, MonitorSupervisor
from transcode_orchestrator.orchestrator.reconciler import Reconciler
from transcode_orchestrator.orchestrator.repository import JobSnapshotRepository
from transcode_orchestrator.orchestrator.services import JobOrchestrationService
from transcode_orchestrator.orchestrator.store import JobStore, append_log


class FakeStorage:
    """In-memory object storage."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    def get(self, key: str) -> bytes:
        return self.objects[key]

    def list_prefixes(self, prefix: str) -> list[str]:
        head = f"{prefix.strip('/')}/"
        found: set[str] = set()
        for key in self.objects:
            if not key.startswith(head):
                continue
            rest = key[len(head) :]
            if "/" in rest:
                found.add(f"{head}{rest.split('/', 1)[0]}/")
        return sorted(found)


class FakeLauncher:
    """Returns scripted handles or raises a scripted error."""

    def __init__(
        self,
        handles: list[str] | None = None,
        *,
        error: Exception | None = None,
        block: threading.Event | None = None,
    ) -> None:
        self.handles = list(handles or ["T1"])
        self.error = error
        self.block = block
        self.requests: list[TaskRunRequest] = []

    def run(self, request: TaskRunRequest) -> str:
        self.requests.append(request)
        if self.block is not None:
            self.block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.handles.pop(0)


class ScriptedStatusProvider:
    """Replays per-handle responses; the last response repeats forever."""

    def __init__(self) -> None:
        self.responses: dict[str, list[RemoteTaskState | Exception]] = {}
        self.active: list[str] = []
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def script(self, task_handle: str, *responses: RemoteTaskState | Exception) -> None:
        self.responses[task_handle] = list(responses)

    def describe(self, cluster: str, task_handle: str) -> RemoteTaskState:
        with self._lock:
            self.calls.append(task_handle)
            queue = self.responses[task_handle]
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def list_active(self, cluster: str) -> list[str]:
        return list(self.active)


def active_state(task_handle: str, status: str = "RUNNING", **environment: str) -> RemoteTaskState:
    return RemoteTaskState(task_handle=task_handle, last_status=status, environment=environment)


def stopped_state(
    task_handle: str,
    *,
    exit_code: int = 0,
    reason: str | None = None,
    stop_code: str | None = "EssentialContainerExited",
) -> RemoteTaskState:
    return RemoteTaskState(
        task_handle=task_handle,
        last_status="STOPPED",
        stop_code=stop_code,
        stopped_reason="Essential container in task exited",
        containers=[ContainerExit(name="transcoder", exit_code=exit_code, reason=reason)],
    )


def make_running_job(store: JobStore, input_ref: str = "raw/a.mp4", handle: str = "T1") -> Job:
    job = store.create(input_ref, ResourceTier.STANDARD)

    def _start(current: Job) -> None:
        current.task_handle = handle
        current.status = JobStatus.RUNNING
        append_log(current, f"Started task: {handle}")

    return store.update(job.id, _start)


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobSnapshotRepository]:
    repository = JobSnapshotRepository(tmp_path / "jobs.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def store(repository: JobSnapshotRepository) -> JobStore:
    return JobStore(repository, flush_interval_seconds=0)


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def status_provider() -> ScriptedStatusProvider:
    return ScriptedStatusProvider()


@pytest.fixture()
def fast_policy() -> MonitorPolicy:
    return MonitorPolicy(poll_interval_seconds=0.01, poll_jitter_ratio=0.0)


@pytest.fixture()
def supervisor(
    store: JobStore,
    status_provider: ScriptedStatusProvider,
    fast_policy: MonitorPolicy,
) -> Iterator[MonitorSupervisor]:
    supervisor = MonitorSupervisor(
        store=store,
        status_provider=status_provider,
        cluster="test-cluster",
        policy=fast_policy,
    )
    yield supervisor
    supervisor.stop_all(timeout=5)


@pytest.fixture()
def reconciler(
    store: JobStore,
    storage: FakeStorage,
    status_provider: ScriptedStatusProvider,
    supervisor: MonitorSupervisor,
) -> Reconciler:
    return Reconciler(
        store=store,
        storage=storage,
        status_provider=status_provider,
        supervisor=supervisor,
        cluster="test-cluster",
    )


@pytest.fixture()
def service_factory(
    store: JobStore,
    supervisor: MonitorSupervisor,
    reconciler: Reconciler,
):
    created: list[JobOrchestrationService] = []

    def _factory(launcher: FakeLauncher, *, launch_timeout_seconds: float = 5.0):
        service = JobOrchestrationService(
            store=store,
            launcher=launcher,
            supervisor=supervisor,
            reconciler=reconciler,
            launch=LaunchSettings(
                cluster="test-cluster",
                launch_timeout_seconds=launch_timeout_seconds,
            ),
        )
        created.append(service)
        return service

    yield _factory
    for service in created:
        service.close()
