"""Domain models for job orchestration and pull-request delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PLANNING = "planning"
    CODEGEN = "codegen"
    APPLY = "apply"
    PR_OPEN = "pr_open"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_ORDER: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.PLANNING,
    JobStatus.CODEGEN,
    JobStatus.APPLY,
    JobStatus.PR_OPEN,
    JobStatus.COMPLETE,
)

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Allow only the next forward stage, or FAILED from a non-terminal status."""

    if current in TERMINAL_STATUSES:
        return False
    if target == JobStatus.FAILED:
        return True
    return STAGE_ORDER.index(target) == STAGE_ORDER.index(current) + 1


class PullRequestStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class ProgressEventKind(str, Enum):
    """Event kinds published on a job channel."""

    STATUS = "status"
    LOG = "log"
    DIFF_CHUNK = "diff_chunk"
    PR = "pr"
    ERROR = "error"


class DatastoreError(RuntimeError):
    """Persistence layer failed (unreachable, locked, constraint broken)."""


class InvalidTransitionError(ValueError):
    """Raised when a status update would regress or skip a stage."""

    def __init__(self, *, job_id: str, current: JobStatus, target: JobStatus) -> None:
        super().__init__(
            f"Invalid job transition: {current.value} -> {target.value} (job_id={job_id})",
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class SpecPayloadError(ValueError):
    """Stored specification payload does not match the expected shape."""


@dataclass(slots=True, frozen=True)
class CodeDeliverable:
    description: str


@dataclass(slots=True, frozen=True)
class TestDeliverable:
    __test__ = False

    description: str
    framework: str


Deliverable = CodeDeliverable | TestDeliverable


@dataclass(slots=True, frozen=True)
class TestPlan:
    __test__ = False

    strategy: str
    commands: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class FileTarget:
    path: str
    reason: str


@dataclass(slots=True, frozen=True)
class SpecContent:
    """Validated specification body, as stored in the payload column."""

    goal: str
    deliverables: tuple[Deliverable, ...] = ()
    constraints: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    risk_notes: tuple[str, ...] = ()
    test_plan: TestPlan | None = None
    file_targets: tuple[FileTarget, ...] = ()


@dataclass(slots=True, frozen=True)
class SpecView:
    """Immutable implementation specification referenced by a job."""

    spec_id: str
    thread_id: str | None
    title: str | None
    content: SpecContent
    created_at: datetime

    @property
    def goal(self) -> str:
        return self.content.goal


@dataclass(slots=True)
class SpecCreate:
    content: SpecContent
    spec_id: str | None = None
    thread_id: str | None = None
    title: str | None = None


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    repo: str
    base_branch: str = "main"
    job_id: str | None = None
    feature_branch: str | None = None
    spec_id: str | None = None
    thread_id: str | None = None


@dataclass(slots=True)
class JobUpdate:
    """Partial job update; ``None`` fields are left untouched."""

    status: JobStatus | None = None
    feature_branch: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = None

    def to_values(self) -> dict[str, object]:
        values: dict[str, object] = {}
        if self.status is not None:
            values["status"] = self.status.value
        if self.feature_branch is not None:
            values["feature_branch"] = self.feature_branch
        if self.pr_url is not None:
            values["pr_url"] = self.pr_url
        if self.pr_number is not None:
            values["pr_number"] = self.pr_number
        if self.error is not None:
            values["error"] = self.error
        return values


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and pipeline logic."""

    job_id: str
    repo: str
    base_branch: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    feature_branch: str | None = None
    spec_id: str | None = None
    thread_id: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class PullRequestCreate:
    job_id: str
    repo: str
    pr_number: int
    url: str
    status: PullRequestStatus
    head_branch: str
    base_branch: str


@dataclass(slots=True)
class PullRequestView:
    record_id: int
    job_id: str
    repo: str
    pr_number: int
    url: str
    status: PullRequestStatus
    head_branch: str
    base_branch: str
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job with its pull request record, if one was opened."""

    job: JobView
    pull_request: PullRequestView | None
    spec: SpecView | None = None


@dataclass(slots=True)
class StaleJobRecovery:
    """What ``recover_stale_jobs`` did with crash leftovers."""

    requeued: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
