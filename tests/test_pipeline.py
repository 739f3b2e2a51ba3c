from __future__ import annotations

import logging

import allure
import pytest
from conftest import FakeCodegen, FakeVcs, RecordingDatastore, RecordingPublisher
from sqlalchemy import text

from ifi_worker.orchestrator.backend import CodegenError
from ifi_worker.orchestrator.github import RepositoryMutationError
from ifi_worker.orchestrator.models import (
    CodeDeliverable,
    DatastoreError,
    JobCreate,
    JobStatus,
    JobUpdate,
    PullRequestStatus,
    SpecContent,
    SpecCreate,
    TestDeliverable,
    TestPlan,
)
from ifi_worker.orchestrator.pipeline import JOB_FAILED_CODE, JobPipeline
from ifi_worker.orchestrator.repository import JobRepository
from ifi_worker.orchestrator.specs import PLACEHOLDER_MARKER

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Job State Machine"),
]

FORWARD_WALK = [
    JobStatus.PLANNING,
    JobStatus.CODEGEN,
    JobStatus.APPLY,
    JobStatus.PR_OPEN,
    JobStatus.COMPLETE,
]


def _pipeline(
    datastore,
    *,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> JobPipeline:
    return JobPipeline(
        datastore=datastore,
        codegen=codegen,
        vcs=vcs,
        publisher=publisher,
        patch_path=".ifi/autogen.patch",
    )


def _enqueue_example(repository: JobRepository, **overrides):
    payload = JobCreate(repo="o/r", base_branch="main", job_id="abc12345")
    for name, value in overrides.items():
        setattr(payload, name, value)
    return repository.enqueue_job(payload)


def test_job_without_spec_reaches_complete_with_one_pr_record(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    job = _enqueue_example(repository)

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert codegen.calls == ["Create a simple change for repository o/r"]
    assert result.status == JobStatus.COMPLETE
    assert result.feature_branch == "feat/autogen-abc12345"
    assert result.pr_number == 7
    assert result.pr_url == "https://github.com/o/r/pull/7"
    assert vcs.branches == [("o/r", "main", "feat/autogen-abc12345")]
    assert vcs.files[0].path == ".ifi/autogen.patch"
    assert vcs.files[0].branch == "feat/autogen-abc12345"
    assert vcs.files[0].message == "feat(autogen): apply generated changes for job abc12345"
    assert vcs.pulls[0].draft is True
    assert vcs.pulls[0].title == "Automated change"

    record = repository.get_pull_request_for_job(job_id="abc12345")
    assert record is not None
    assert record.head_branch == "feat/autogen-abc12345"
    assert record.base_branch == "main"
    assert record.status == PullRequestStatus.DRAFT

    stored = repository.get_job(job_id="abc12345")
    assert stored is not None
    assert stored.status == JobStatus.COMPLETE


def test_events_follow_stage_order_on_job_channel(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    job = _enqueue_example(repository)

    _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert {event.channel for event in publisher.events} == {"job:abc12345"}
    assert publisher.statuses() == [status.value for status in FORWARD_WALK]
    kinds = publisher.kinds()
    assert kinds.index("diff_chunk") > kinds.index("status", 1)
    assert publisher.of_kind("diff_chunk") == [
        {"content": codegen.output, "placeholder": False},
    ]
    assert publisher.of_kind("pr") == [
        {"url": "https://github.com/o/r/pull/7", "number": 7, "status": "draft"},
    ]
    assert kinds[-2:] == ["status", "log"]
    assert "error" not in kinds


def test_branch_rate_limit_marks_job_failed_without_pr_record(
    repository: JobRepository,
    codegen: FakeCodegen,
    publisher: RecordingPublisher,
) -> None:
    vcs = FakeVcs(ensure_error=RuntimeError("rate limited"))
    job = _enqueue_example(repository)

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.status == JobStatus.FAILED
    assert result.error == "rate limited"
    assert repository.get_pull_request_for_job(job_id="abc12345") is None
    assert vcs.files == []
    assert vcs.pulls == []

    assert publisher.kinds()[-2:] == ["status", "error"]
    assert publisher.statuses()[-1] == "failed"
    assert publisher.of_kind("error") == [
        {
            "code": JOB_FAILED_CODE,
            "message": "rate limited",
            "classifier_version": 1,
            "failure_class": "rate_limited",
            "matched_rule": "rate_limited",
            "matched_pattern": "rate limit",
        },
    ]


def test_pull_request_rejection_keeps_feature_branch_for_retry(
    repository: JobRepository,
    codegen: FakeCodegen,
    publisher: RecordingPublisher,
) -> None:
    vcs = FakeVcs(open_error=RepositoryMutationError("Validation Failed", status_code=422))
    job = _enqueue_example(repository)

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.status == JobStatus.FAILED
    assert result.error == "Validation Failed"
    assert result.feature_branch == "feat/autogen-abc12345"
    assert result.pr_url is None
    assert repository.get_pull_request_for_job(job_id="abc12345") is None


def test_status_walk_is_strictly_forward(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    datastore = RecordingDatastore(repository)
    job = _enqueue_example(repository)

    _pipeline(datastore, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert datastore.statuses == FORWARD_WALK


def test_status_walk_ends_early_at_failed(
    repository: JobRepository,
    codegen: FakeCodegen,
    publisher: RecordingPublisher,
) -> None:
    datastore = RecordingDatastore(repository)
    vcs = FakeVcs(write_error=RepositoryMutationError("Conflict", status_code=409))
    job = _enqueue_example(repository)

    _pipeline(datastore, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert datastore.statuses == [
        JobStatus.PLANNING,
        JobStatus.CODEGEN,
        JobStatus.APPLY,
        JobStatus.FAILED,
    ]


def test_codegen_failure_degrades_to_placeholder_patch(
    repository: JobRepository,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="ifi_worker.orchestrator.pipeline")
    codegen = FakeCodegen(error=CodegenError("upstream 503", transient=True))
    job = _enqueue_example(repository)

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.status == JobStatus.COMPLETE
    patch = vcs.files[0].content
    assert patch.strip()
    assert PLACEHOLDER_MARKER in patch
    assert "upstream 503" in patch
    assert "Create a simple change for repository o/r" in patch
    diff_chunks = publisher.of_kind("diff_chunk")
    assert diff_chunks == [{"content": patch, "placeholder": True}]
    assert any(
        "placeholder" in data["message"] for data in publisher.of_kind("log")
    )
    assert "transient=True" in caplog.text


def test_empty_codegen_output_is_treated_as_failure(
    repository: JobRepository,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    codegen = FakeCodegen(output="   \n")
    job = _enqueue_example(repository)

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.status == JobStatus.COMPLETE
    assert PLACEHOLDER_MARKER in vcs.files[0].content


def test_recorded_feature_branch_is_reused(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    job = _enqueue_example(repository, feature_branch="feat/resume-me")

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.feature_branch == "feat/resume-me"
    assert vcs.branches == [("o/r", "main", "feat/resume-me")]
    assert vcs.pulls[0].head == "feat/resume-me"


def test_spec_drives_instruction_branch_and_pull_request_text(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    spec = repository.create_spec(
        SpecCreate(
            title="Add login page",
            content=SpecContent(
                goal="Let users sign in with email",
                deliverables=(
                    CodeDeliverable(description="Login form"),
                    TestDeliverable(description="Login tests", framework="pytest"),
                ),
                acceptance_criteria=("Users can log in",),
                risk_notes=("Session fixation",),
                test_plan=TestPlan(strategy="unit", commands=("pytest -q",)),
            ),
        ),
    )
    job = repository.enqueue_job(JobCreate(repo="o/r", job_id="def67890xyz", spec_id=spec.spec_id))

    result = _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.feature_branch == "feat/add-login-page-def67890"
    instruction = codegen.calls[0]
    assert instruction.startswith("Goal: Let users sign in with email")
    assert "- [test:pytest] Login tests" in instruction
    pull = vcs.pulls[0]
    assert pull.title == "Let users sign in with email"
    assert "- [ ] Users can log in" in pull.body
    assert "pytest -q" in pull.body
    assert vcs.files[0].message == (
        "feat(add-login-page): apply generated changes for job def67890"
    )


def test_missing_spec_row_falls_back_to_generic_instruction(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    job = _enqueue_example(repository)
    job.spec_id = "does-not-exist"

    _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert codegen.calls == ["Create a simple change for repository o/r"]


def test_process_job_requires_queued_job(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    job = _enqueue_example(repository)
    planning = repository.update_job_status(job.job_id, JobUpdate(status=JobStatus.PLANNING))

    with pytest.raises(ValueError, match="must be queued"):
        _pipeline(repository, codegen=codegen, vcs=vcs, publisher=publisher).process_job(planning)

    assert publisher.events == []


def test_datastore_error_propagates_without_marking_failed(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    datastore = RecordingDatastore(repository)
    datastore.fail_on_status = JobStatus.APPLY
    datastore.failure = DatastoreError("database is locked")
    job = _enqueue_example(repository)

    with pytest.raises(DatastoreError):
        _pipeline(datastore, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    stored = repository.get_job(job_id="abc12345")
    assert stored is not None
    assert stored.status == JobStatus.CODEGEN
    assert stored.error is None
    assert "error" not in publisher.kinds()
    assert vcs.branches == []


def test_malformed_spec_fails_job_during_planning(
    repository: JobRepository,
    codegen: FakeCodegen,
    vcs: FakeVcs,
    publisher: RecordingPublisher,
) -> None:
    with repository.engine.begin() as connection:
        connection.execute(
            text(
                "INSERT INTO specs (spec_id, payload_json, created_at) "
                "VALUES ('bad-spec', '{\"goal\": 3}', '2026-01-01 00:00:00.000000')",
            ),
        )
    datastore = RecordingDatastore(repository)
    job = _enqueue_example(repository, spec_id="bad-spec")

    result = _pipeline(datastore, codegen=codegen, vcs=vcs, publisher=publisher).process_job(job)

    assert result.status == JobStatus.FAILED
    assert result.error is not None
    assert "goal" in result.error
    assert datastore.statuses == [JobStatus.PLANNING, JobStatus.FAILED]
    assert codegen.calls == []
    assert vcs.branches == []
    assert repository.get_pull_request_for_job(job_id="abc12345") is None
    assert publisher.statuses() == ["planning", "failed"]
    assert publisher.kinds()[-1] == "error"
    [error_event] = publisher.of_kind("error")
    assert error_event["code"] == JOB_FAILED_CODE
    assert error_event["failure_class"] == "non_retryable"
