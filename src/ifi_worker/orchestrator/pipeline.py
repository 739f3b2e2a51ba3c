"""Job state machine: drives one queued job to a pull request.

Stages run strictly in order and each persists its status before publishing
the matching events, so a crash between stages leaves the job in the last
committed status. Events are at-most-once; nothing here waits on delivery.

Failure policy:

* code generation errors degrade to a placeholder patch and never fail the job;
* any other error after the job left ``queued`` marks it ``failed`` and emits
  an ``error`` event;
* ``DatastoreError`` always propagates; the dispatcher logs it and the job
  stays in its last committed status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ifi_worker.orchestrator.backend.base import CodegenBackend, CodegenError
from ifi_worker.orchestrator.failure_classifier import classify_failure
from ifi_worker.orchestrator.github import (
    RepositoryMutationClient,
    RepositoryMutationError,
)
from ifi_worker.orchestrator.models import (
    DatastoreError,
    JobStatus,
    JobUpdate,
    JobView,
    ProgressEventKind,
    PullRequestCreate,
    PullRequestStatus,
    SpecView,
)
from ifi_worker.orchestrator.publisher import (
    DEFAULT_CHANNEL_PREFIX,
    ProgressPublisher,
    channel_for_job,
)
from ifi_worker.orchestrator.repository import Datastore
from ifi_worker.orchestrator.specs import (
    commit_message,
    compile_instruction,
    derive_feature_branch,
    fallback_instruction,
    placeholder_patch,
    pull_request_body,
    pull_request_title,
    resolve_spec,
)

logger = logging.getLogger(__name__)

JOB_FAILED_CODE = "JOB_FAILED"
DEFAULT_PATCH_PATH = ".ifi/autogen.patch"


@dataclass(slots=True)
class GeneratedPatch:
    content: str
    placeholder: bool


class JobPipeline:
    """Single entry point ``process_job`` over injected collaborators."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        datastore: Datastore,
        codegen: CodegenBackend,
        vcs: RepositoryMutationClient,
        publisher: ProgressPublisher,
        patch_path: str = DEFAULT_PATCH_PATH,
        draft: bool = True,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
    ) -> None:
        self.datastore = datastore
        self.codegen = codegen
        self.vcs = vcs
        self.publisher = publisher
        self.patch_path = patch_path
        self.draft = draft
        self.channel_prefix = channel_prefix

    def process_job(self, job: JobView) -> JobView:
        """Run every stage for a ``queued`` job and return its final view."""

        if job.status != JobStatus.QUEUED:
            raise ValueError(
                f"Job {job.job_id} must be {JobStatus.QUEUED.value} to process, "
                f"got {job.status.value}",
            )
        channel = channel_for_job(job.job_id, prefix=self.channel_prefix)

        job = self._advance(job, JobStatus.PLANNING, channel=channel, message="Planning changes")
        try:
            spec = resolve_spec(self.datastore, job)
        except DatastoreError:
            raise
        except Exception as error:  # noqa: BLE001
            return self._fail(job, channel=channel, error=error)
        if spec is None:
            self._log(channel, "No specification attached; using generic instruction")
        else:
            self._log(channel, f"Loaded specification {spec.spec_id}")

        job = self._advance(job, JobStatus.CODEGEN, channel=channel, message="Generating code")
        instruction = compile_instruction(spec) if spec is not None else fallback_instruction(job)
        patch = self._generate(job, instruction=instruction, channel=channel)
        self._publish(
            channel,
            ProgressEventKind.DIFF_CHUNK,
            {"content": patch.content, "placeholder": patch.placeholder},
        )

        try:
            job = self._apply(job, spec=spec, patch=patch, channel=channel)
            job = self._open_pull_request(job, spec=spec, channel=channel)
        except DatastoreError:
            raise
        except Exception as error:  # noqa: BLE001
            return self._fail(job, channel=channel, error=error)

        job = self._advance(
            job,
            JobStatus.COMPLETE,
            channel=channel,
            message=f"Job complete: {job.pr_url}",
        )
        logger.info("Job %s complete (%s)", job.job_id, job.pr_url)
        return job

    def _generate(self, job: JobView, *, instruction: str, channel: str) -> GeneratedPatch:
        try:
            content = self.codegen.generate(instruction)
            if not content.strip():
                raise ValueError("code generation returned empty output")
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            classification = classify_failure(message)
            transient = error.transient if isinstance(error, CodegenError) else None
            logger.warning(
                "Code generation failed for job %s (%s, transient=%s); using placeholder patch: %s",
                job.job_id,
                classification.failure_class.value,
                transient,
                message,
            )
            self._log(channel, f"Code generation failed; using placeholder patch: {message}")
            return GeneratedPatch(
                content=placeholder_patch(job=job, instruction=instruction, error=message),
                placeholder=True,
            )
        return GeneratedPatch(content=content, placeholder=False)

    def _apply(
        self,
        job: JobView,
        *,
        spec: SpecView | None,
        patch: GeneratedPatch,
        channel: str,
    ) -> JobView:
        job = self._advance(job, JobStatus.APPLY, channel=channel, message="Applying changes")
        branch = derive_feature_branch(job, spec)
        if job.feature_branch != branch:
            job = self.datastore.update_job_status(job.job_id, JobUpdate(feature_branch=branch))

        self.vcs.ensure_branch(job.repo, job.base_branch, branch)
        message = commit_message(job, spec)
        self.vcs.create_or_update_file(
            job.repo,
            path=self.patch_path,
            content=patch.content,
            branch=branch,
            message=message,
        )
        self._log(channel, f"Committed {self.patch_path} to {branch}: {message}")
        return job

    def _open_pull_request(self, job: JobView, *, spec: SpecView | None, channel: str) -> JobView:
        branch = job.feature_branch or derive_feature_branch(job, spec)
        opened = self.vcs.open_pull_request(
            job.repo,
            head=branch,
            base=job.base_branch,
            title=pull_request_title(spec),
            body=pull_request_body(spec, job),
            draft=self.draft,
        )
        job = self.datastore.update_job_status(
            job.job_id,
            JobUpdate(status=JobStatus.PR_OPEN, pr_url=opened.url, pr_number=opened.number),
        )
        pr_status = PullRequestStatus.DRAFT if self.draft else PullRequestStatus.OPEN
        self._publish(channel, ProgressEventKind.STATUS, {"status": job.status.value})
        self._publish(
            channel,
            ProgressEventKind.PR,
            {"url": opened.url, "number": opened.number, "status": pr_status.value},
        )
        self.datastore.create_pull_request_record(
            PullRequestCreate(
                job_id=job.job_id,
                repo=job.repo,
                pr_number=opened.number,
                url=opened.url,
                status=pr_status,
                head_branch=branch,
                base_branch=job.base_branch,
            ),
        )
        logger.info("Opened pull request #%s for job %s", opened.number, job.job_id)
        return job

    def _advance(self, job: JobView, status: JobStatus, *, channel: str, message: str) -> JobView:
        job = self.datastore.update_job_status(job.job_id, JobUpdate(status=status))
        logger.info("Job %s -> %s", job.job_id, status.value)
        self._publish(channel, ProgressEventKind.STATUS, {"status": status.value})
        self._log(channel, message)
        return job

    def _fail(self, job: JobView, *, channel: str, error: Exception) -> JobView:
        message = str(error) or error.__class__.__name__
        status_code = error.status_code if isinstance(error, RepositoryMutationError) else None
        classification = classify_failure(message, status_code)
        logger.error(
            "Job %s failed at %s (%s): %s",
            job.job_id,
            job.status.value,
            classification.failure_class.value,
            message,
        )
        job = self.datastore.update_job_status(
            job.job_id,
            JobUpdate(status=JobStatus.FAILED, error=message),
        )
        self._publish(channel, ProgressEventKind.STATUS, {"status": JobStatus.FAILED.value})
        self._publish(
            channel,
            ProgressEventKind.ERROR,
            {
                "code": JOB_FAILED_CODE,
                "message": message,
                **classification.to_event_details(),
            },
        )
        return job

    def _log(self, channel: str, message: str) -> None:
        self._publish(channel, ProgressEventKind.LOG, {"message": message})

    def _publish(self, channel: str, event: ProgressEventKind, data: dict[str, Any]) -> None:
        self.publisher.publish(channel, event, data)
