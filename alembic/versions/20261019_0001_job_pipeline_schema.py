"""Job pipeline schema: specs, jobs and pull request records."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "specs",
        sa.Column("spec_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("spec_id"),
    )
    op.create_index("ix_specs_thread_id", "specs", ["thread_id"], unique=False)

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=True),
        sa.Column("spec_id", sa.String(), nullable=True),
        sa.Column("repo", sa.String(), nullable=False),
        sa.Column("base_branch", sa.String(), nullable=False),
        sa.Column("feature_branch", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("pr_number", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["spec_id"], ["specs.spec_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("idx_jobs_queue", "jobs", ["status", "created_at"], unique=False)
    op.create_index("ix_jobs_thread_id", "jobs", ["thread_id"], unique=False)
    op.create_index("ix_jobs_spec_id", "jobs", ["spec_id"], unique=False)
    op.create_index("ix_jobs_repo", "jobs", ["repo"], unique=False)
    op.create_index("ix_jobs_feature_branch", "jobs", ["feature_branch"], unique=False)
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)

    op.create_table(
        "pull_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("repo", sa.String(), nullable=False),
        sa.Column("pr_number", sa.Integer(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("head_branch", sa.String(), nullable=False),
        sa.Column("base_branch", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", name="uq_pull_requests_job_id"),
    )
    op.create_index("ix_pull_requests_repo", "pull_requests", ["repo"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_pull_requests_repo", table_name="pull_requests")
    op.drop_table("pull_requests")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_feature_branch", table_name="jobs")
    op.drop_index("ix_jobs_repo", table_name="jobs")
    op.drop_index("ix_jobs_spec_id", table_name="jobs")
    op.drop_index("ix_jobs_thread_id", table_name="jobs")
    op.drop_index("idx_jobs_queue", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_specs_thread_id", table_name="specs")
    op.drop_table("specs")
