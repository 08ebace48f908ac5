from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import make_running_job

from transcode_orchestrator.orchestrator.errors import (
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
)
from transcode_orchestrator.orchestrator.models import Job, JobStatus, ResourceTier
from transcode_orchestrator.orchestrator.outputs import derive_outputs
from transcode_orchestrator.orchestrator.repository import JobSnapshotRepository
from transcode_orchestrator.orchestrator.store import JobStore, append_log

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Job Store"),
]


def _complete(job: Job) -> None:
    append_log(job, "Task completed successfully")
    job.status = JobStatus.COMPLETED
    job.outputs = derive_outputs(job.input_ref)


def test_create_returns_pending_job_with_first_log_line(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.ECONOMY)

    assert job.status is JobStatus.PENDING
    assert job.task_handle is None
    assert job.outputs is None
    assert job.resource_tier is ResourceTier.ECONOMY
    assert job.log_messages() == ["Job created for raw/a.mp4"]
    assert store.get(job.id).id == job.id


def test_get_unknown_job_raises(store: JobStore) -> None:
    with pytest.raises(JobNotFoundError, match="missing"):
        store.get("missing")
    with pytest.raises(JobNotFoundError):
        store.update("missing", _complete)


def test_returned_jobs_are_detached_copies(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)
    job.logs.clear()
    job.status = JobStatus.FAILED

    stored = store.get(job.id)
    assert stored.status is JobStatus.PENDING
    assert len(stored.logs) == 1


def test_disallowed_transition_leaves_record_unchanged(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    with pytest.raises(InvalidTransitionError, match="PENDING -> COMPLETED"):
        store.update(job.id, _complete)

    stored = store.get(job.id)
    assert stored.status is JobStatus.PENDING
    assert stored.outputs is None
    assert len(stored.logs) == 1


def test_terminal_status_never_regresses(store: JobStore) -> None:
    job = make_running_job(store)
    store.update(job.id, _complete)

    def _revive(current: Job) -> None:
        current.status = JobStatus.RUNNING

    with pytest.raises(InvalidTransitionError):
        store.update(job.id, _revive)
    assert store.get(job.id).status is JobStatus.COMPLETED


def test_task_handle_is_assigned_at_most_once(store: JobStore) -> None:
    job = make_running_job(store, handle="T1")

    def _reassign(current: Job) -> None:
        current.task_handle = "T2"

    with pytest.raises(InvalidTransitionError, match="task handle"):
        store.update(job.id, _reassign)
    assert store.get(job.id).task_handle == "T1"


def test_logs_are_append_only(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    def _truncate(current: Job) -> None:
        current.logs.clear()

    with pytest.raises(InvalidTransitionError, match="append-only"):
        store.update(job.id, _truncate)


def test_outputs_require_completed_status(store: JobStore) -> None:
    job = make_running_job(store)

    def _early_outputs(current: Job) -> None:
        current.outputs = {"master": "output/a/master.m3u8"}

    with pytest.raises(InvalidTransitionError, match="outputs"):
        store.update(job.id, _early_outputs)


def test_immutable_fields_are_protected(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    def _retarget(current: Job) -> None:
        current.input_ref = "raw/b.mp4"

    with pytest.raises(InvalidTransitionError, match="immutable"):
        store.update(job.id, _retarget)


def test_terminal_transition_sets_finished_at(store: JobStore) -> None:
    job = make_running_job(store)
    assert job.finished_at is None

    completed = store.update(job.id, _complete)
    assert completed.finished_at is not None
    assert completed.outputs == derive_outputs("raw/a.mp4")


def test_import_rejects_duplicate_ids(store: JobStore) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    with pytest.raises(DuplicateJobError):
        store.import_job(job)
    assert len(store.list()) == 1


def test_find_by_task_handle(store: JobStore) -> None:
    running = make_running_job(store, handle="T9")
    store.create("raw/b.mp4", ResourceTier.STANDARD)

    found = store.find_by_task_handle("T9")
    assert found is not None
    assert found.id == running.id
    assert store.find_by_task_handle("T404") is None


def test_snapshot_round_trips_every_field(tmp_path: Path) -> None:
    db_path = tmp_path / "roundtrip.db"
    repository = JobSnapshotRepository(db_path)
    repository.init_schema()
    store = JobStore(repository, flush_interval_seconds=60)
    job = make_running_job(store, input_ref="raw/movie.mov", handle="T7")
    for index in range(3):
        store.append_log(job.id, f"Task status: RUNNING #{index}")
    store.update(job.id, _complete)
    failed = store.create("raw/b.mp4", ResourceTier.PREMIUM)

    def _fail(current: Job) -> None:
        append_log(current, "Failure reason: quota exceeded")
        current.status = JobStatus.FAILED
        current.failure_reason = "quota exceeded"

    store.update(failed.id, _fail)
    expected = {item.id: item for item in store.list()}
    store.close()
    repository.close()

    reopened_repository = JobSnapshotRepository(db_path)
    reopened_repository.init_schema()
    reopened = JobStore(reopened_repository)
    assert reopened.load() == 2
    for job_id, original in expected.items():
        loaded = reopened.get(job_id)
        assert loaded.input_ref == original.input_ref
        assert loaded.resource_tier is original.resource_tier
        assert loaded.status is original.status
        assert loaded.task_handle == original.task_handle
        assert loaded.outputs == original.outputs
        assert loaded.failure_reason == original.failure_reason
        assert loaded.monitoring_degraded == original.monitoring_degraded
        assert loaded.log_messages() == original.log_messages()
        assert (loaded.finished_at is None) == (original.finished_at is None)
    reopened_repository.close()


def test_log_only_updates_wait_for_flush(repository: JobSnapshotRepository) -> None:
    store = JobStore(repository, flush_interval_seconds=60)
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    store.append_log(job.id, "Task status: PENDING")
    assert repository.count_logs(job_id=job.id) == 1

    assert store.flush() == 1
    assert repository.count_logs(job_id=job.id) == 2
    assert store.flush() == 0


def test_status_changes_are_written_immediately(repository: JobSnapshotRepository) -> None:
    store = JobStore(repository, flush_interval_seconds=60)
    job = make_running_job(store)

    persisted = {item.id: item for item in repository.load_jobs()}
    assert persisted[job.id].status is JobStatus.RUNNING
    assert persisted[job.id].task_handle == "T1"


def test_failed_synchronous_write_keeps_previous_record(
    store: JobStore,
    repository: JobSnapshotRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    def _broken_save(jobs) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(repository, "save_jobs", _broken_save)

    def _start(current: Job) -> None:
        current.task_handle = "T1"
        current.status = JobStatus.RUNNING

    with pytest.raises(PersistenceError, match="disk full"):
        store.update(job.id, _start)
    stored = store.get(job.id)
    assert stored.status is JobStatus.PENDING
    assert stored.task_handle is None


def test_failed_periodic_flush_makes_store_read_only(
    repository: JobSnapshotRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = JobStore(repository, flush_interval_seconds=0.01)
    job = store.create("raw/a.mp4", ResourceTier.STANDARD)

    def _broken_save(jobs) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(repository, "save_jobs", _broken_save)
    store.append_log(job.id, "Task status: PENDING")
    store.start_flusher()
    assert store._flusher_thread is not None
    store._flusher_thread.join(timeout=5)

    with pytest.raises(PersistenceError, match="read-only"):
        store.append_log(job.id, "Task status: RUNNING")
    with pytest.raises(PersistenceError):
        store.close()


def test_flush_never_overwrites_a_terminal_write(
    repository: JobSnapshotRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = JobStore(repository, flush_interval_seconds=60)
    job = make_running_job(store)
    store.append_log(job.id, "Task status: RUNNING")
    completer = threading.Thread(target=store.update, args=(job.id, _complete))
    original_save = repository.save_jobs

    def _complete_while_flushing(jobs) -> None:
        if completer.ident is None:
            completer.start()
            completer.join(timeout=0.2)
        original_save(jobs)

    monkeypatch.setattr(repository, "save_jobs", _complete_while_flushing)
    assert store.flush() == 1
    completer.join(timeout=5)
    assert not completer.is_alive()
    store.close()

    persisted = {item.id: item for item in repository.load_jobs()}[job.id]
    assert persisted.status is JobStatus.COMPLETED
    assert persisted.outputs == derive_outputs(job.input_ref)
    assert persisted.finished_at is not None
    assert persisted.log_messages() == store.get(job.id).log_messages()


def test_repository_ignores_snapshots_older_than_the_stored_row(
    store: JobStore,
    repository: JobSnapshotRepository,
) -> None:
    running = make_running_job(store)
    completed = store.update(running.id, _complete)
    running.updated_at -= timedelta(seconds=1)

    repository.save_job(running)

    persisted = {item.id: item for item in repository.load_jobs()}[running.id]
    assert persisted.status is JobStatus.COMPLETED
    assert persisted.log_messages() == completed.log_messages()


def test_concurrent_appends_to_one_job_are_serialized(store: JobStore) -> None:
    job = make_running_job(store)
    workers = 8
    per_worker = 25

    def _append(worker: int) -> None:
        for index in range(per_worker):
            store.append_log(job.id, f"worker-{worker} line-{index}")

    threads = [threading.Thread(target=_append, args=(worker,)) for worker in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    messages = store.get(job.id).log_messages()
    assert len(messages) == 2 + workers * per_worker
    for worker in range(workers):
        own = [message for message in messages if message.startswith(f"worker-{worker} ")]
        assert own == [f"worker-{worker} line-{index}" for index in range(per_worker)]
    assert len(repository_messages(store, job.id)) == len(messages)


def repository_messages(store: JobStore, job_id: str) -> list[str]:
    loaded = {item.id: item for item in store.repository.load_jobs()}
    return loaded[job_id].log_messages()
