"""Runtime configuration for the transcode orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TIER_TASK_DEFINITIONS = {
    "economy": "video-transcoder-small:1",
    "standard": "video-transcoder-medium:1",
    "premium": "video-transcoder-large:1",
}

NOT_FOUND_RESOLUTIONS = ("heuristic", "completed", "failed")
NAMESPACE_MATCH_MODES = ("exact", "substring")


@dataclass(slots=True)
class StoreSettings:
    """Job snapshot persistence settings."""

    flush_interval_seconds: float = 5.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class MonitorSettings:
    """Monitor loop cadence and failure policy."""

    poll_interval_seconds: float = 10.0
    poll_jitter_ratio: float = 0.2
    not_found_threshold: int = 3
    not_found_resolution: str = "heuristic"
    not_found_min_logs_for_completion: int = 5
    max_consecutive_errors: int = 10
    min_terminal_log_lines: int = 3


@dataclass(slots=True)
class LaunchSettings:
    """Remote task launch parameters."""

    cluster: str = "video-transcoding-cluster"
    container_name: str = "transcoder"
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    assign_public_ip: bool = True
    launch_timeout_seconds: float = 30.0
    tier_task_definitions: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_TIER_TASK_DEFINITIONS),
    )


@dataclass(slots=True)
class StorageSettings:
    """Object storage layout."""

    root_dir: Path = Path(".transcode_orchestrator/storage")
    raw_prefix: str = "raw/"
    output_prefix: str = "output/"
    input_extension: str = ".mp4"


@dataclass(slots=True)
class ReconcileSettings:
    """Startup and on-demand reconciliation settings."""

    startup_delay_seconds: float = 5.0
    namespace_match: str = "exact"
    enabled_on_startup: bool = True


@dataclass(slots=True)
class SimulatorSettings:
    """Local execution backend used in place of a remote cluster."""

    tasks_dir: Path = Path(".transcode_orchestrator/tasks")
    provisioning_seconds: float = 2.0
    pending_seconds: float = 2.0
    running_seconds: float = 10.0
    require_input: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".transcode_orchestrator.db")
    store: StoreSettings = field(default_factory=StoreSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    launch: LaunchSettings = field(default_factory=LaunchSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    simulator: SimulatorSettings = field(default_factory=SimulatorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        data_dir = Path(os.getenv("TRANSCODE_ORCH_DATA_DIR", ".transcode_orchestrator"))
        return cls(
            db_path=db_path
            or Path(os.getenv("TRANSCODE_ORCH_DB_PATH", ".transcode_orchestrator.db")),
            store=StoreSettings(
                flush_interval_seconds=float(
                    os.getenv("TRANSCODE_ORCH_FLUSH_INTERVAL_SECONDS", "5.0"),
                ),
                sqlite_busy_timeout_ms=int(
                    os.getenv("TRANSCODE_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            monitor=MonitorSettings(
                poll_interval_seconds=float(
                    os.getenv("TRANSCODE_ORCH_POLL_INTERVAL_SECONDS", "10.0"),
                ),
                poll_jitter_ratio=float(os.getenv("TRANSCODE_ORCH_POLL_JITTER_RATIO", "0.2")),
                not_found_threshold=int(os.getenv("TRANSCODE_ORCH_NOT_FOUND_THRESHOLD", "3")),
                not_found_resolution=os.getenv(
                    "TRANSCODE_ORCH_NOT_FOUND_RESOLUTION",
                    "heuristic",
                )
                .strip()
                .lower(),
                not_found_min_logs_for_completion=int(
                    os.getenv("TRANSCODE_ORCH_NOT_FOUND_MIN_LOGS", "5"),
                ),
                max_consecutive_errors=int(
                    os.getenv("TRANSCODE_ORCH_MAX_CONSECUTIVE_ERRORS", "10"),
                ),
                min_terminal_log_lines=int(
                    os.getenv("TRANSCODE_ORCH_MIN_TERMINAL_LOG_LINES", "3"),
                ),
            ),
            launch=LaunchSettings(
                cluster=os.getenv("TRANSCODE_ORCH_CLUSTER", "video-transcoding-cluster"),
                container_name=os.getenv("TRANSCODE_ORCH_CONTAINER_NAME", "transcoder"),
                subnets=_env_csv("TRANSCODE_ORCH_SUBNETS"),
                security_groups=_env_csv("TRANSCODE_ORCH_SECURITY_GROUPS"),
                assign_public_ip=_env_bool("TRANSCODE_ORCH_ASSIGN_PUBLIC_IP", default=True),
                launch_timeout_seconds=float(
                    os.getenv("TRANSCODE_ORCH_LAUNCH_TIMEOUT_SECONDS", "30.0"),
                ),
                tier_task_definitions=_collect_tier_task_definitions(),
            ),
            storage=StorageSettings(
                root_dir=Path(
                    os.getenv("TRANSCODE_ORCH_STORAGE_DIR", str(data_dir / "storage")),
                ),
                raw_prefix=os.getenv("TRANSCODE_ORCH_RAW_PREFIX", "raw/"),
                output_prefix=os.getenv("TRANSCODE_ORCH_OUTPUT_PREFIX", "output/"),
                input_extension=os.getenv("TRANSCODE_ORCH_INPUT_EXTENSION", ".mp4"),
            ),
            reconcile=ReconcileSettings(
                startup_delay_seconds=float(
                    os.getenv("TRANSCODE_ORCH_RECONCILE_STARTUP_DELAY_SECONDS", "5.0"),
                ),
                namespace_match=os.getenv("TRANSCODE_ORCH_RECONCILE_NAMESPACE_MATCH", "exact")
                .strip()
                .lower(),
                enabled_on_startup=_env_bool(
                    "TRANSCODE_ORCH_RECONCILE_ON_STARTUP",
                    default=True,
                ),
            ),
            simulator=SimulatorSettings(
                tasks_dir=Path(os.getenv("TRANSCODE_ORCH_SIM_TASKS_DIR", str(data_dir / "tasks"))),
                provisioning_seconds=float(
                    os.getenv("TRANSCODE_ORCH_SIM_PROVISIONING_SECONDS", "2.0"),
                ),
                pending_seconds=float(os.getenv("TRANSCODE_ORCH_SIM_PENDING_SECONDS", "2.0")),
                running_seconds=float(os.getenv("TRANSCODE_ORCH_SIM_RUNNING_SECONDS", "10.0")),
                require_input=_env_bool("TRANSCODE_ORCH_SIM_REQUIRE_INPUT", default=False),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending environment variable."""

        if self.store.flush_interval_seconds < 0:
            raise ValueError("TRANSCODE_ORCH_FLUSH_INTERVAL_SECONDS must be >= 0.")
        if self.store.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TRANSCODE_ORCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.monitor.poll_interval_seconds <= 0:
            raise ValueError("TRANSCODE_ORCH_POLL_INTERVAL_SECONDS must be > 0.")
        if not 0 <= self.monitor.poll_jitter_ratio < 1:
            raise ValueError("TRANSCODE_ORCH_POLL_JITTER_RATIO must be in [0, 1).")
        if self.monitor.not_found_threshold < 2:  # noqa: PLR2004
            raise ValueError(
                "TRANSCODE_ORCH_NOT_FOUND_THRESHOLD must be >= 2; "
                "a single not-found observation is never conclusive.",
            )
        if self.monitor.not_found_resolution not in NOT_FOUND_RESOLUTIONS:
            raise ValueError(
                "TRANSCODE_ORCH_NOT_FOUND_RESOLUTION must be one of: "
                f"{', '.join(NOT_FOUND_RESOLUTIONS)}.",
            )
        if self.monitor.max_consecutive_errors < 0:
            raise ValueError("TRANSCODE_ORCH_MAX_CONSECUTIVE_ERRORS must be >= 0.")
        if self.monitor.min_terminal_log_lines < 0:
            raise ValueError("TRANSCODE_ORCH_MIN_TERMINAL_LOG_LINES must be >= 0.")
        if self.launch.launch_timeout_seconds <= 0:
            raise ValueError("TRANSCODE_ORCH_LAUNCH_TIMEOUT_SECONDS must be > 0.")
        if not self.launch.cluster.strip():
            raise ValueError("TRANSCODE_ORCH_CLUSTER must not be empty.")
        if self.reconcile.startup_delay_seconds < 0:
            raise ValueError("TRANSCODE_ORCH_RECONCILE_STARTUP_DELAY_SECONDS must be >= 0.")
        if self.reconcile.namespace_match not in NAMESPACE_MATCH_MODES:
            raise ValueError(
                "TRANSCODE_ORCH_RECONCILE_NAMESPACE_MATCH must be one of: "
                f"{', '.join(NAMESPACE_MATCH_MODES)}.",
            )
        if not self.storage.output_prefix.strip("/"):
            raise ValueError("TRANSCODE_ORCH_OUTPUT_PREFIX must not be empty.")


def _collect_tier_task_definitions() -> dict[str, str]:
    definitions = dict(DEFAULT_TIER_TASK_DEFINITIONS)
    for tier in DEFAULT_TIER_TASK_DEFINITIONS:
        override = os.getenv(f"TRANSCODE_ORCH_TASK_DEFINITION_{tier.upper()}", "").strip()
        if override:
            definitions[tier] = override
    return definitions


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
