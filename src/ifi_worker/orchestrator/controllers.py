"""Controllers for worker and job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ifi_worker.config import Settings
from ifi_worker.orchestrator.backend import CodegenBackend, build_codegen_backend
from ifi_worker.orchestrator.backend.http_backend import OpenRouterCodegenBackend
from ifi_worker.orchestrator.dispatcher import Dispatcher
from ifi_worker.orchestrator.github import GitHubClient, split_repo
from ifi_worker.orchestrator.models import (
    JobCreate,
    JobStatus,
    SpecCreate,
    SpecPayloadError,
)
from ifi_worker.orchestrator.pipeline import JobPipeline
from ifi_worker.orchestrator.publisher import NullProgressPublisher, RedisProgressPublisher
from ifi_worker.orchestrator.repository import JobRepository
from ifi_worker.orchestrator.specs import parse_spec_payload
from ifi_worker.storage.common import utc_now


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class WorkerHealthCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    repo: str
    base_branch: str
    feature_branch: str | None
    spec_file: Path | None
    thread_id: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class CommandResult:
    """Report lines plus an overall success flag for exit code mapping."""

    lines: list[str]
    success: bool


class WorkerCliController:
    """Coordinates dispatcher, queue and inspection CLI operations."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with (
            _repository(settings) as repository,
            _publisher(settings) as publisher,
            _github_client(settings) as vcs,
            _codegen_backend(settings) as codegen,
        ):
            pipeline = JobPipeline(
                datastore=repository,
                codegen=codegen,
                vcs=vcs,
                publisher=publisher,
                patch_path=settings.github.patch_path,
                draft=settings.github.draft,
                channel_prefix=settings.events.channel_prefix,
            )
            dispatcher = Dispatcher(
                datastore=repository,
                pipeline=pipeline,
                heartbeat=publisher,
                stale_job_recoverer=repository,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                stale_job_seconds=settings.worker.stale_job_seconds,
            )
            max_ticks = 1 if command.once else command.max_ticks
            summary = dispatcher.run_loop(max_ticks=max_ticks)

        return [
            "Worker summary: "
            f"ticks={summary.ticks} processed={summary.processed} "
            f"completed={summary.completed} failed={summary.failed} "
            f"errored={summary.errored} idle={summary.idle_ticks} "
            f"recovered={summary.recovered}",
        ]

    def health(self, command: WorkerHealthCommand) -> CommandResult:
        """Report heartbeat freshness and dependency reachability."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings, migrate=False) as repository:
            db_ok = repository.ping()
            revision = repository.schema_revision() if db_ok else None

        lines = [
            f"Database: {'ok' if db_ok else 'unreachable'} ({settings.db_path})",
            f"Schema: {revision or 'missing'}",
        ]
        if not settings.events.redis_url:
            lines.append("Redis: not configured")
            lines.append("Heartbeat: unavailable")
            lines.append("Status: unhealthy")
            return CommandResult(lines=lines, success=False)

        with _publisher(settings) as publisher:
            redis_ok = publisher.ping()
            heartbeat = publisher.read_heartbeat()
        lines.append(f"Redis: {'ok' if redis_ok else 'unreachable'}")

        heartbeat_ok = False
        if heartbeat is None or not isinstance(heartbeat.get("ts"), int | float):
            lines.append("Heartbeat: missing")
        else:
            age_seconds = max(0.0, utc_now().timestamp() - heartbeat["ts"] / 1000.0)
            heartbeat_ok = age_seconds <= settings.worker.health_threshold_seconds
            lines.append(
                f"Heartbeat: {'fresh' if heartbeat_ok else 'stale'} "
                f"age={age_seconds:.1f}s pid={heartbeat.get('pid', '-')} "
                f"uptime_ms={heartbeat.get('uptimeMs', '-')}",
            )

        healthy = db_ok and revision is not None and redis_ok and heartbeat_ok
        lines.append(f"Status: {'healthy' if healthy else 'unhealthy'}")
        return CommandResult(lines=lines, success=healthy)

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        split_repo(command.repo)
        spec_create = _load_spec_file(command.spec_file, thread_id=command.thread_id)
        with _repository(settings) as repository:
            spec_id: str | None = None
            if spec_create is not None:
                spec_id = repository.create_spec(spec_create).spec_id
            job = repository.enqueue_job(
                JobCreate(
                    repo=command.repo,
                    base_branch=command.base_branch,
                    feature_branch=command.feature_branch,
                    spec_id=spec_id,
                    thread_id=command.thread_id,
                ),
            )

        return [
            f"Job enqueued: job_id={job.job_id} repo={job.repo} "
            f"base={job.base_branch} status={job.status.value}",
            f"Spec: {job.spec_id or '-'}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status.lower()) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} repo={job.repo} status={job.status.value} "
                f"branch={job.feature_branch or '-'} pr={job.pr_url or '-'} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Repo: {job.repo}",
            f"Status: {job.status.value}",
            f"Base branch: {job.base_branch}",
            f"Feature branch: {job.feature_branch or '-'}",
            f"Spec: {job.spec_id or '-'}",
            f"Thread: {job.thread_id or '-'}",
            f"Error: {job.error or '-'}",
            f"Created: {job.created_at.isoformat()}",
            f"Updated: {job.updated_at.isoformat()}",
        ]
        if details.spec is not None:
            lines.append(f"Goal: {details.spec.goal}")
        pull_request = details.pull_request
        if pull_request is None:
            lines.append("Pull request: -")
        else:
            lines.append(
                f"Pull request: #{pull_request.pr_number} {pull_request.url} "
                f"status={pull_request.status.value} "
                f"{pull_request.head_branch} -> {pull_request.base_branch}",
            )
        return lines


def _load_spec_file(path: Path | None, *, thread_id: str | None) -> SpecCreate | None:
    if path is None:
        return None
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise SpecPayloadError(f"Spec file {path} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise SpecPayloadError(f"Spec file {path} must contain a JSON object.")
    title = payload.get("title")
    file_thread_id = payload.get("thread_id")
    return SpecCreate(
        content=parse_spec_payload(payload),
        title=title if isinstance(title, str) else None,
        thread_id=thread_id or (file_thread_id if isinstance(file_thread_id, str) else None),
    )


@contextmanager
def _repository(settings: Settings, *, migrate: bool = True) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    if migrate:
        repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _publisher(
    settings: Settings,
) -> Iterator[RedisProgressPublisher | NullProgressPublisher]:
    publisher: RedisProgressPublisher | NullProgressPublisher
    if settings.events.redis_url:
        publisher = RedisProgressPublisher.from_url(
            settings.events.redis_url,
            heartbeat_key=settings.worker.heartbeat_key,
        )
    else:
        publisher = NullProgressPublisher()
    try:
        yield publisher
    finally:
        publisher.close()


@contextmanager
def _github_client(settings: Settings) -> Iterator[GitHubClient]:
    client = GitHubClient(
        token=settings.github.token,
        api_url=settings.github.api_url,
        timeout_seconds=settings.github.timeout_seconds,
        max_retries=settings.github.max_retries,
    )
    try:
        yield client
    finally:
        client.close()


@contextmanager
def _codegen_backend(settings: Settings) -> Iterator[CodegenBackend]:
    backend = build_codegen_backend(settings.codegen)
    try:
        yield backend
    finally:
        if isinstance(backend, OpenRouterCodegenBackend):
            backend.close()
