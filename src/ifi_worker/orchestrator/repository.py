"""Persistent job queue repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import literal_column, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from ifi_worker.orchestrator.models import (
    DatastoreError,
    InvalidTransitionError,
    JobCreate,
    JobDetails,
    JobStatus,
    JobUpdate,
    JobView,
    PullRequestCreate,
    PullRequestStatus,
    PullRequestView,
    SpecCreate,
    SpecPayloadError,
    SpecView,
    StaleJobRecovery,
    TERMINAL_STATUSES,
    can_transition,
)
from ifi_worker.orchestrator.specs import parse_spec_payload, spec_content_to_payload
from ifi_worker.storage.alembic_runner import current_revision, upgrade_head
from ifi_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ifi_worker.storage.sqlmodel_models import ImplementationSpec, Job, PullRequestRecord


class Datastore(Protocol):
    """Persistence operations the job pipeline and dispatcher depend on."""

    def get_next_queued_job(self) -> JobView | None: ...

    def update_job_status(self, job_id: str, update: JobUpdate) -> JobView: ...

    def get_spec_by_id(self, spec_id: str) -> SpecView | None: ...

    def create_pull_request_record(self, payload: PullRequestCreate) -> None: ...


class JobRepository:
    """Job/spec/pull-request persistence facade.

    Every method opens and commits its own session, so no transaction ever
    spans more than one pipeline stage.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        try:
            return current_revision(self.engine)
        except SQLAlchemyError as error:
            raise DatastoreError(f"Datastore operation failed: {error}") from error

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def create_spec(self, payload: SpecCreate) -> SpecView:
        spec_id = payload.spec_id or str(uuid4())
        with self._session() as session:
            row = ImplementationSpec(
                spec_id=spec_id,
                thread_id=payload.thread_id,
                title=payload.title,
                payload_json=json.dumps(
                    spec_content_to_payload(payload.content),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_spec_view(row)

    def get_spec_by_id(self, spec_id: str) -> SpecView | None:
        with self._session() as session:
            row = session.exec(
                select(ImplementationSpec).where(ImplementationSpec.spec_id == spec_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_spec_view(row)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        now = utc_now()
        with self._session() as session:
            row = Job(
                job_id=payload.job_id or str(uuid4()),
                thread_id=payload.thread_id,
                spec_id=payload.spec_id,
                repo=payload.repo,
                base_branch=payload.base_branch,
                feature_branch=payload.feature_branch,
                status=JobStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_next_queued_job(self) -> JobView | None:
        """Oldest queued job; insertion order breaks created_at ties."""

        with self._session() as session:
            row = session.exec(
                select(Job)
                .where(Job.status == JobStatus.QUEUED.value)
                .order_by(col(Job.created_at).asc(), literal_column("jobs.rowid").asc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def update_job_status(self, job_id: str, update: JobUpdate) -> JobView:
        """Apply a forward status transition and/or field updates."""

        with self._session() as session:
            row = self._get_job_row(session=session, job_id=job_id)
            current = JobStatus(row.status)
            if update.status is not None and update.status != current:
                if not can_transition(current, update.status):
                    raise InvalidTransitionError(
                        job_id=job_id,
                        current=current,
                        target=update.status,
                    )
            elif current in TERMINAL_STATUSES:
                raise InvalidTransitionError(job_id=job_id, current=current, target=current)

            for name, value in update.to_values().items():
                setattr(row, name, value)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def create_pull_request_record(self, payload: PullRequestCreate) -> None:
        """Insert the job's pull request record; repeated calls keep the first."""

        if self.get_pull_request_for_job(job_id=payload.job_id) is not None:
            return
        try:
            with Session(self.engine) as session:
                session.add(
                    PullRequestRecord(
                        job_id=payload.job_id,
                        repo=payload.repo,
                        pr_number=payload.pr_number,
                        url=payload.url,
                        status=payload.status.value,
                        head_branch=payload.head_branch,
                        base_branch=payload.base_branch,
                        created_at=utc_now(),
                    ),
                )
                session.commit()
        except IntegrityError:
            if self.get_pull_request_for_job(job_id=payload.job_id) is None:
                raise DatastoreError(
                    f"Failed to record pull request for job {payload.job_id}",
                ) from None
        except SQLAlchemyError as error:
            raise DatastoreError(f"Datastore operation failed: {error}") from error

    def get_pull_request_for_job(self, *, job_id: str) -> PullRequestView | None:
        with self._session() as session:
            row = session.exec(
                select(PullRequestRecord).where(PullRequestRecord.job_id == job_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_pull_request_view(row)

    def get_job(self, *, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with self._session() as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        job = self.get_job(job_id=job_id)
        if job is None:
            return None
        spec = self.get_spec_by_id(job.spec_id) if job.spec_id else None
        return JobDetails(
            job=job,
            pull_request=self.get_pull_request_for_job(job_id=job_id),
            spec=spec,
        )

    def recover_stale_jobs(self, *, stale_after: timedelta) -> StaleJobRecovery:
        """Reset jobs left mid-pipeline by a crashed worker.

        Jobs that already opened their pull request are completed; every other
        intermediate job goes back to the queue with its feature branch kept.
        """

        recovery = StaleJobRecovery()
        cutoff = to_db_datetime(utc_now() - stale_after)
        intermediate = [
            status.value
            for status in JobStatus
            if status not in TERMINAL_STATUSES and status != JobStatus.QUEUED
        ]
        with self._session() as session:
            rows = session.exec(
                select(Job).where(
                    col(Job.status).in_(intermediate),
                    Job.updated_at < cutoff,
                ),
            ).all()
            now = utc_now()
            for row in rows:
                if row.status == JobStatus.PR_OPEN.value and row.pr_url:
                    self._add_missing_pull_request_record(session=session, row=row)
                    row.status = JobStatus.COMPLETE.value
                    recovery.completed.append(row.job_id)
                else:
                    row.status = JobStatus.QUEUED.value
                    recovery.requeued.append(row.job_id)
                row.updated_at = now
                session.add(row)
            session.commit()
        return recovery

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise DatastoreError(f"Datastore operation failed: {error}") from error

    def _add_missing_pull_request_record(self, *, session: Session, row: Job) -> None:
        if row.pr_url is None or row.pr_number is None or row.feature_branch is None:
            return
        existing = session.exec(
            select(PullRequestRecord).where(PullRequestRecord.job_id == row.job_id),
        ).one_or_none()
        if existing is not None:
            return
        session.add(
            PullRequestRecord(
                job_id=row.job_id,
                repo=row.repo,
                pr_number=row.pr_number,
                url=row.pr_url,
                status=PullRequestStatus.DRAFT.value,
                head_branch=row.feature_branch,
                base_branch=row.base_branch,
                created_at=utc_now(),
            ),
        )

    def _get_job_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return row


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        repo=row.repo,
        base_branch=row.base_branch,
        status=JobStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        feature_branch=row.feature_branch,
        spec_id=row.spec_id,
        thread_id=row.thread_id,
        pr_url=row.pr_url,
        pr_number=row.pr_number,
        error=row.error,
    )


def _to_spec_view(row: ImplementationSpec) -> SpecView:
    try:
        payload = json.loads(row.payload_json)
    except json.JSONDecodeError as error:
        raise SpecPayloadError(f"Spec {row.spec_id} payload is not valid JSON.") from error
    return SpecView(
        spec_id=row.spec_id,
        thread_id=row.thread_id,
        title=row.title,
        content=parse_spec_payload(payload),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_pull_request_view(row: PullRequestRecord) -> PullRequestView:
    return PullRequestView(
        record_id=row.id or 0,
        job_id=row.job_id,
        repo=row.repo,
        pr_number=row.pr_number,
        url=row.url,
        status=PullRequestStatus(row.status),
        head_branch=row.head_branch,
        base_branch=row.base_branch,
        created_at=to_utc_aware_datetime(row.created_at),
    )
