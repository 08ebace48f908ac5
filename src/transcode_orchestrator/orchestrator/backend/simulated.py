"""Local stand-in for the remote execution system.

Tasks are JSON files in ``root_dir``. A task's remote status is computed from the
time elapsed since launch, so state survives process restarts the same way a
real cluster's would. When a task stops it writes the HLS playlists the real
transcoder produces into object storage.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from transcode_orchestrator.orchestrator.backend.base import ObjectStorage
from transcode_orchestrator.orchestrator.errors import LaunchError, TaskNotFoundError
from transcode_orchestrator.orchestrator.failure_classifier import describe_launch_failure
from transcode_orchestrator.orchestrator.models import (
    CLEAN_STOP_CODE,
    ContainerExit,
    RemoteTaskState,
    TaskRunRequest,
)
from transcode_orchestrator.orchestrator.outputs import RENDITIONS, derive_outputs
from transcode_orchestrator.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

_RENDITION_BANDWIDTH = {
    "1080p": ("5000000", "1920x1080"),
    "720p": ("2800000", "1280x720"),
    "480p": ("1400000", "854x480"),
    "360p": ("800000", "640x360"),
}


class SimulatedExecutionBackend:
    """Task launcher and status provider backed by task files."""

    def __init__(  # noqa: PLR0913
        self,
        root_dir: Path,
        *,
        storage: ObjectStorage | None = None,
        output_prefix: str = "output/",
        provisioning_seconds: float = 2.0,
        pending_seconds: float = 2.0,
        running_seconds: float = 10.0,
        require_input: bool = False,
        known_task_definitions: tuple[str, ...] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root_dir = root_dir
        self.storage = storage
        self.output_prefix = output_prefix
        self.provisioning_seconds = provisioning_seconds
        self.pending_seconds = pending_seconds
        self.running_seconds = running_seconds
        self.require_input = require_input
        self.known_task_definitions = known_task_definitions
        self._clock = clock
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def run(self, request: TaskRunRequest) -> str:
        if self.known_task_definitions and request.task_definition not in (
            self.known_task_definitions
        ):
            message = f"Unable to describe task definition {request.task_definition}"
            raise LaunchError(
                describe_launch_failure(code="InvalidParameterException", message=message),
                code="InvalidParameterException",
            )
        if not request.environment.get("KEY"):
            raise LaunchError(
                "Required environment variable KEY must be set",
                code="InvalidParameterException",
            )

        task_handle = f"arn:sim:ecs:local:task/{request.cluster}/{uuid4().hex}"
        record = {
            "task_handle": task_handle,
            "cluster": request.cluster,
            "task_definition": request.task_definition,
            "container_name": request.container_name,
            "environment": dict(request.environment),
            "launched_at": self._clock().isoformat(),
            "outputs_written": False,
        }
        self._write_record(task_handle, record)
        logger.info("Simulated task started: %s (%s)", task_handle, request.task_definition)
        return task_handle

    def describe(self, cluster: str, task_handle: str) -> RemoteTaskState:
        record = self._read_record(task_handle)
        if record is None or record.get("cluster") != cluster:
            raise TaskNotFoundError(f"Task not found: {task_handle}", code="MISSING")

        last_status = self._status_for(record)
        environment = {str(k): str(v) for k, v in record.get("environment", {}).items()}
        container_name = str(record.get("container_name") or "transcoder")
        if last_status != "STOPPED":
            return RemoteTaskState(
                task_handle=task_handle,
                last_status=last_status,
                environment=environment,
            )

        failure = self._input_failure(environment)
        if failure is not None:
            return RemoteTaskState(
                task_handle=task_handle,
                last_status="STOPPED",
                stop_code=CLEAN_STOP_CODE,
                stopped_reason="Essential container in task exited",
                containers=[ContainerExit(name=container_name, exit_code=1, reason=failure)],
                environment=environment,
            )

        if not record.get("outputs_written"):
            self._write_outputs(environment["KEY"])
            record["outputs_written"] = True
            self._write_record(task_handle, record)
        return RemoteTaskState(
            task_handle=task_handle,
            last_status="STOPPED",
            stop_code=CLEAN_STOP_CODE,
            stopped_reason="Essential container in task exited",
            containers=[ContainerExit(name=container_name, exit_code=0)],
            environment=environment,
        )

    def list_active(self, cluster: str) -> list[str]:
        handles: list[str] = []
        for path in sorted(self.root_dir.glob("*.json")):
            record = json.loads(path.read_text("utf-8"))
            if record.get("cluster") != cluster:
                continue
            if self._status_for(record) != "STOPPED":
                handles.append(str(record["task_handle"]))
        return handles

    def _status_for(self, record: dict[str, object]) -> str:
        elapsed = (self._clock() - from_iso(str(record["launched_at"]))).total_seconds()
        if elapsed < self.provisioning_seconds:
            return "PROVISIONING"
        if elapsed < self.provisioning_seconds + self.pending_seconds:
            return "PENDING"
        if elapsed < self.provisioning_seconds + self.pending_seconds + self.running_seconds:
            return "RUNNING"
        return "STOPPED"

    def _input_failure(self, environment: dict[str, str]) -> str | None:
        key = environment.get("KEY", "")
        if not key:
            return "Required environment variable KEY must be set"
        if not self.require_input or self.storage is None:
            return None
        try:
            self.storage.get(key)
        except KeyError:
            return f"Input object not found: {key}"
        return None

    def _write_outputs(self, input_ref: str) -> None:
        if self.storage is None:
            return
        outputs = derive_outputs(input_ref, output_prefix=self.output_prefix)
        master_lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
        for rendition in RENDITIONS:
            bandwidth, resolution = _RENDITION_BANDWIDTH[rendition]
            master_lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},RESOLUTION={resolution}",
            )
            master_lines.append(f"{rendition}.m3u8")
            self.storage.put(
                outputs[rendition],
                b"#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-PLAYLIST-TYPE:VOD\n#EXT-X-ENDLIST\n",
            )
        self.storage.put(outputs["master"], ("\n".join(master_lines) + "\n").encode("utf-8"))

    def _path_for(self, task_handle: str) -> Path:
        return self.root_dir / f"{task_handle.rsplit('/', 1)[-1]}.json"

    def _read_record(self, task_handle: str) -> dict[str, object] | None:
        path = self._path_for(task_handle)
        if not path.is_file():
            return None
        return json.loads(path.read_text("utf-8"))

    def _write_record(self, task_handle: str, record: dict[str, object]) -> None:
        path = self._path_for(task_handle)
        tmp_path = path.with_suffix(f".{uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(record, sort_keys=True, indent=2), "utf-8")
        os.replace(tmp_path, path)
