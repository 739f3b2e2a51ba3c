"""CLI entrypoint for ifi-worker."""

import logging
from pathlib import Path

import rich_click as click

from ifi_worker import __version__
from ifi_worker.orchestrator.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    WorkerCliController,
    WorkerHealthCommand,
    WorkerRunCommand,
)
from ifi_worker.orchestrator.models import JobStatus, SpecPayloadError

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="ifi-worker")
def ifi_worker() -> None:
    """IFI job worker CLI."""


@ifi_worker.group()
def worker() -> None:
    """Dispatcher commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single tick or poll until SIGINT/SIGTERM.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for ticks in loop mode.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_run(db_path: Path | None, once: bool, max_ticks: int | None, log_level: str) -> None:
    """Poll the job queue and drive jobs to pull requests."""

    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    try:
        lines = WORKER_CONTROLLER.run_worker(
            WorkerRunCommand(db_path=db_path, once=once, max_ticks=max_ticks),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@worker.command("health")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def worker_health(db_path: Path | None) -> None:
    """Check worker heartbeat freshness, Redis and database."""

    result = WORKER_CONTROLLER.health(WorkerHealthCommand(db_path=db_path))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Worker is unhealthy.")


@ifi_worker.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--repo", required=True, help="Target repository as owner/name.")
@click.option("--base-branch", default="main", show_default=True, help="Pull request base.")
@click.option("--feature-branch", default=None, help="Reuse an existing feature branch.")
@click.option(
    "--spec-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON implementation spec (goal, deliverables, constraints, ...).",
)
@click.option("--thread-id", default=None, help="Owning conversation thread id.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    repo: str,
    base_branch: str,
    feature_branch: str | None,
    spec_file: Path | None,
    thread_id: str | None,
) -> None:
    """Queue a job, optionally with a specification."""

    try:
        lines = WORKER_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                repo=repo,
                base_branch=base_branch,
                feature_branch=feature_branch,
                spec_file=spec_file,
                thread_id=thread_id,
            ),
        )
    except (SpecPayloadError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
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
    """List recent jobs."""

    _emit_lines(
        WORKER_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its pull request record."""

    _emit_lines(
        WORKER_CONTROLLER.inspect_job(JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ifi_worker()
