"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ImplementationSpec(SQLModel, table=True):
    __tablename__ = "specs"  # type: ignore[bad-override]

    spec_id: str = Field(primary_key=True)
    thread_id: str | None = Field(default=None, index=True)
    title: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    thread_id: str | None = Field(default=None, index=True)
    spec_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("specs.spec_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    repo: str = Field(index=True)
    base_branch: str
    feature_branch: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    pr_url: str | None = None
    pr_number: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PullRequestRecord(SQLModel, table=True):
    __tablename__ = "pull_requests"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    repo: str = Field(index=True)
    pr_number: int
    url: str
    status: str
    head_branch: str
    base_branch: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
