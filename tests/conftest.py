"""Shared test fixtures and recording collaborators."""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from ifi_worker.orchestrator.github import OpenedPullRequest
from ifi_worker.orchestrator.models import (
    JobStatus,
    JobUpdate,
    JobView,
    ProgressEventKind,
    PullRequestCreate,
    SpecView,
)
from ifi_worker.orchestrator.repository import JobRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ifi_worker.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)
SAMPLE_DIFF = "--- a/README.md\n+++ b/README.md\n@@ -1 +1 @@\n-old\n+new\n"


@dataclass(slots=True)
class PublishedEvent:
    channel: str
    event: str
    data: dict[str, Any]


class RecordingPublisher:
    """In-memory event channel keeping publish order."""

    def __init__(self) -> None:
        self.events: list[PublishedEvent] = []
        self.heartbeats: list[dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()

    def publish(self, channel_key: str, event: ProgressEventKind, data: Mapping[str, Any]) -> None:
        with self._lock:
            self.events.append(PublishedEvent(channel_key, event.value, dict(data)))

    def write_heartbeat(self, payload: Mapping[str, Any]) -> None:
        self.heartbeats.append(dict(payload))

    def close(self) -> None:
        self.closed = True

    def kinds(self) -> list[str]:
        return [item.event for item in self.events]

    def statuses(self) -> list[str]:
        return [item.data["status"] for item in self.events if item.event == "status"]

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [item.data for item in self.events if item.event == kind]


class FakeCodegen:
    def __init__(self, output: str = SAMPLE_DIFF, error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.calls: list[str] = []

    def generate(self, instruction: str) -> str:
        self.calls.append(instruction)
        if self.error is not None:
            raise self.error
        return self.output


@dataclass(slots=True)
class WrittenFile:
    repo: str
    path: str
    content: str
    branch: str
    message: str


@dataclass(slots=True)
class OpenedPull:
    repo: str
    head: str
    base: str
    title: str
    body: str
    draft: bool


@dataclass
class FakeVcs:
    """Repository mutation client that records calls and can fail per operation."""

    ensure_error: Exception | None = None
    write_error: Exception | None = None
    open_error: Exception | None = None
    pr_number: int = 7
    branches: list[tuple[str, str, str]] = field(default_factory=list)
    files: list[WrittenFile] = field(default_factory=list)
    pulls: list[OpenedPull] = field(default_factory=list)

    def ensure_branch(self, repo: str, base_branch: str, feature_branch: str) -> None:
        self.branches.append((repo, base_branch, feature_branch))
        if self.ensure_error is not None:
            raise self.ensure_error

    def create_or_update_file(
        self,
        repo: str,
        *,
        path: str,
        content: str,
        branch: str,
        message: str,
    ) -> str | None:
        self.files.append(WrittenFile(repo, path, content, branch, message))
        if self.write_error is not None:
            raise self.write_error
        return "commit-sha"

    def open_pull_request(
        self,
        repo: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> OpenedPullRequest:
        self.pulls.append(OpenedPull(repo, head, base, title, body, draft))
        if self.open_error is not None:
            raise self.open_error
        return OpenedPullRequest(
            number=self.pr_number,
            url=f"https://github.com/{repo}/pull/{self.pr_number}",
        )


class RecordingDatastore:
    """Delegates to a real repository and records every requested status."""

    def __init__(self, inner: JobRepository) -> None:
        self.inner = inner
        self.statuses: list[JobStatus] = []
        self.fail_on_status: JobStatus | None = None
        self.failure: Exception | None = None

    def get_next_queued_job(self) -> JobView | None:
        return self.inner.get_next_queued_job()

    def update_job_status(self, job_id: str, update: JobUpdate) -> JobView:
        if update.status is not None:
            if update.status == self.fail_on_status and self.failure is not None:
                raise self.failure
            self.statuses.append(update.status)
        return self.inner.update_job_status(job_id, update)

    def get_spec_by_id(self, spec_id: str) -> SpecView | None:
        return self.inner.get_spec_by_id(spec_id)

    def create_pull_request_record(self, payload: PullRequestCreate) -> None:
        self.inner.create_pull_request_record(payload)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "ifi.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture()
def codegen() -> FakeCodegen:
    return FakeCodegen()


@pytest.fixture()
def echo_agent_template(monkeypatch: pytest.MonkeyPatch) -> str:
    """Command template for the bundled echo agent, importable from a subprocess."""

    monkeypatch.setenv("PYTHONPATH", str(SRC_DIR))
    return ECHO_AGENT_COMMAND_TEMPLATE
