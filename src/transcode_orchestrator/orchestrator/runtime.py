"""Wiring of store, adapters, monitors and reconciler into one process."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import TracebackType

from transcode_orchestrator.config import Settings
from transcode_orchestrator.orchestrator.backend.base import (
    ObjectStorage,
    TaskLauncher,
    TaskStatusProvider,
)
from transcode_orchestrator.orchestrator.backend.local_storage import LocalObjectStorage
from transcode_orchestrator.orchestrator.backend.simulated import SimulatedExecutionBackend
from transcode_orchestrator.orchestrator.monitor import (
    MonitorPolicy,
    MonitorSupervisor,
    NotFoundResolution,
)
from transcode_orchestrator.orchestrator.outputs import NamespaceMatch
from transcode_orchestrator.orchestrator.reconciler import Reconciler
from transcode_orchestrator.orchestrator.repository import JobSnapshotRepository
from transcode_orchestrator.orchestrator.services import JobOrchestrationService
from transcode_orchestrator.orchestrator.store import JobStore

logger = logging.getLogger(__name__)


class OrchestratorRuntime:
    """Owns every long-lived component of one orchestrator process.

    ``start(background=False)`` only opens the snapshot, which is what one-shot
    CLI commands need. ``start()`` additionally runs the periodic flusher, fails
    launches a previous process left half-done, resumes monitors of RUNNING jobs
    and schedules the startup reconciliation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        storage: ObjectStorage | None = None,
        launcher: TaskLauncher | None = None,
        status_provider: TaskStatusProvider | None = None,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.storage = storage or LocalObjectStorage(settings.storage.root_dir)
        if launcher is None or status_provider is None:
            simulated = SimulatedExecutionBackend(
                settings.simulator.tasks_dir,
                storage=self.storage,
                output_prefix=settings.storage.output_prefix,
                provisioning_seconds=settings.simulator.provisioning_seconds,
                pending_seconds=settings.simulator.pending_seconds,
                running_seconds=settings.simulator.running_seconds,
                require_input=settings.simulator.require_input,
                known_task_definitions=tuple(settings.launch.tier_task_definitions.values()),
            )
            launcher = launcher or simulated
            status_provider = status_provider or simulated
        self.launcher = launcher
        self.status_provider = status_provider

        self.repository = JobSnapshotRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
        self.store = JobStore(
            self.repository,
            flush_interval_seconds=settings.store.flush_interval_seconds,
        )
        self.supervisor = MonitorSupervisor(
            store=self.store,
            status_provider=self.status_provider,
            cluster=settings.launch.cluster,
            policy=monitor_policy(settings),
        )
        self.reconciler = Reconciler(
            store=self.store,
            storage=self.storage,
            status_provider=self.status_provider,
            supervisor=self.supervisor,
            cluster=settings.launch.cluster,
            output_prefix=settings.storage.output_prefix,
            raw_prefix=settings.storage.raw_prefix,
            input_extension=settings.storage.input_extension,
            namespace_match=NamespaceMatch(settings.reconcile.namespace_match),
        )
        self.service = JobOrchestrationService(
            store=self.store,
            launcher=self.launcher,
            supervisor=self.supervisor,
            reconciler=self.reconciler,
            launch=settings.launch,
            min_terminal_log_lines=settings.monitor.min_terminal_log_lines,
        )
        self._stop = threading.Event()
        self._startup_thread: threading.Thread | None = None
        self._started = False

    def __enter__(self) -> OrchestratorRuntime:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def start(self, *, background: bool = True) -> None:
        if self._started:
            return
        self._started = True
        self.repository.init_schema()
        self.store.load()
        if not background:
            return

        self.store.start_flusher()
        self.reconciler.fail_interrupted_launches()
        resumed = self.reconciler.resume_running()
        if resumed:
            logger.info("Resumed monitoring of %d running job(s)", resumed)
        if self.settings.reconcile.enabled_on_startup:
            self._startup_thread = threading.Thread(
                target=self._startup_reconcile,
                daemon=True,
                name="startup-reconcile",
            )
            self._startup_thread.start()

    def wait_for_startup_reconcile(self, timeout: float | None = None) -> bool:
        if self._startup_thread is None:
            return True
        self._startup_thread.join(timeout=timeout)
        return not self._startup_thread.is_alive()

    def serve_forever(self, *, duration_seconds: float = 0.0) -> None:
        """Block until SIGINT/SIGTERM, or for ``duration_seconds`` when positive."""

        with self._signal_handlers():
            if duration_seconds > 0:
                self._stop.wait(timeout=duration_seconds)
                return
            while not self._stop.wait(timeout=1.0):
                continue

    def request_stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Stop monitors and background threads, then write the final snapshot."""

        self._stop.set()
        if self._startup_thread is not None:
            self._startup_thread.join(timeout=15)
            self._startup_thread = None
        self.supervisor.stop_all()
        self.service.close()
        try:
            self.store.close()
        finally:
            self.repository.close()

    def _startup_reconcile(self) -> None:
        if self._stop.wait(timeout=self.settings.reconcile.startup_delay_seconds):
            return
        try:
            self.reconciler.reconcile()
        except Exception:
            logger.exception("Startup reconciliation failed")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, shutting down", signal.Signals(signum).name)
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Not in main thread, serving without signal handlers")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def monitor_policy(settings: Settings) -> MonitorPolicy:
    return MonitorPolicy(
        poll_interval_seconds=settings.monitor.poll_interval_seconds,
        poll_jitter_ratio=settings.monitor.poll_jitter_ratio,
        not_found_threshold=settings.monitor.not_found_threshold,
        not_found_resolution=NotFoundResolution(settings.monitor.not_found_resolution),
        not_found_min_logs_for_completion=settings.monitor.not_found_min_logs_for_completion,
        max_consecutive_errors=settings.monitor.max_consecutive_errors,
        output_prefix=settings.storage.output_prefix,
    )


@contextmanager
def open_runtime(settings: Settings, *, background: bool = False) -> Iterator[OrchestratorRuntime]:
    runtime = OrchestratorRuntime(settings)
    try:
        runtime.start(background=background)
        yield runtime
    finally:
        runtime.close()
