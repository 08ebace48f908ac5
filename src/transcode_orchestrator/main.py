"""CLI entrypoint for transcode-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from transcode_orchestrator import __version__
from transcode_orchestrator.orchestrator.controllers import (
    JobListCommand,
    JobReconcileCommand,
    JobsCliController,
    JobServeCommand,
    JobShowCommand,
    JobSubmitCommand,
)
from transcode_orchestrator.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="transcode-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity on stderr.",
)
def transcode_orchestrator(log_level: str) -> None:
    """Transcode job orchestrator CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@transcode_orchestrator.group()
def jobs() -> None:
    """Job submission, inspection and reconciliation commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--input-ref", required=True, help="Storage key of the raw media, e.g. raw/a.mp4.")
@click.option(
    "--tier",
    type=click.Choice(["economy", "standard", "premium"], case_sensitive=False),
    default="standard",
    show_default=True,
    help="Resource tier of the remote task.",
)
@click.option(
    "--wait/--no-wait",
    default=False,
    show_default=True,
    help="Block until the job reaches a terminal state or monitoring stops.",
)
@click.option(
    "--wait-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Max seconds to wait with --wait.",
)
def jobs_submit(
    db_path: Path | None,
    input_ref: str,
    tier: str,
    wait: bool,
    wait_timeout: float | None,
) -> None:
    """Submit a media file for transcoding."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.submit(
                JobSubmitCommand(
                    db_path=db_path,
                    input_ref=input_ref,
                    resource_tier=tier.lower(),
                    wait=wait,
                    wait_timeout_seconds=wait_timeout,
                ),
            ),
        ),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_show(db_path: Path | None, job_id: str, output_format: str) -> None:
    """Show one job with its logs and outputs."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.show(
                JobShowCommand(
                    db_path=db_path,
                    job_id=job_id,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List job summaries, newest first."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.list_jobs(
                JobListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@jobs.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_reconcile(db_path: Path | None) -> None:
    """Import jobs from existing outputs and active remote tasks."""

    _emit_lines(_run(lambda: JOBS_CONTROLLER.reconcile(JobReconcileCommand(db_path=db_path))))


@jobs.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--duration",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Stop after this many seconds; 0 runs until interrupted.",
)
def jobs_serve(db_path: Path | None, duration: float) -> None:
    """Run monitors and startup reconciliation until interrupted."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.serve(
                JobServeCommand(db_path=db_path, duration_seconds=duration),
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    transcode_orchestrator()
