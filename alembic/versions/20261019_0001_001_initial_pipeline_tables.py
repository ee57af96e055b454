"""Create users, projects and jobs tables.

The jobs table carries the pending-queue index (status, priority,
created_at) used by the next-pending scan, and a partial index on
status='pending' for PostgreSQL.

Revision ID: 001_initial_pipeline
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_pipeline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

content_type_enum = postgresql.ENUM("image", "video", name="contenttype", create_type=False)
project_status_enum = postgresql.ENUM(
    "pending",
    "processing",
    "enhancing_prompt",
    "generating_image",
    "generating_video",
    "under_review",
    "completed",
    "failed",
    name="projectstatus",
    create_type=False,
)
job_status_enum = postgresql.ENUM(
    "pending", "processing", "completed", "failed", name="jobstatus", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """Create enum types, tables and indexes."""
    bind = op.get_bind()
    content_type_enum.create(bind, checkfirst=True)
    project_status_enum.create(bind, checkfirst=True)
    job_status_enum.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("content_type", content_type_enum, nullable=False),
        sa.Column("product_image_url", sa.Text(), nullable=False),
        sa.Column("scene_image_url", sa.Text(), nullable=True),
        sa.Column("scene_video_url", sa.Text(), nullable=True),
        sa.Column("video_duration_seconds", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("include_audio", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolution", sa.String(20), nullable=False, server_default="1024x1024"),
        sa.Column("quality", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("status", project_status_enum, nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enhanced_prompt", sa.Text(), nullable=True),
        sa.Column("output_image_url", sa.Text(), nullable=True),
        sa.Column("output_video_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actual_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("external_video_task_id", sa.String(100), nullable=True),
        sa.Column("external_sound_task_id", sa.String(100), nullable=True),
        sa.Column("full_task_details", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_projects_user_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"])
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("type", sa.String(50), nullable=False, server_default="cgi_generation"),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("status", job_status_enum, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_jobs_user_id", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_jobs_project_id", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_jobs_project_id", "jobs", ["project_id"])

    # Next-pending scan: ORDER BY priority DESC, created_at
    op.create_index(
        "ix_jobs_status_priority_created_at",
        "jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "idx_jobs_pending",
        "jobs",
        ["priority", "created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    """Drop tables, indexes and enum types."""
    op.drop_index("idx_jobs_pending", table_name="jobs")
    op.drop_index("ix_jobs_status_priority_created_at", table_name="jobs")
    op.drop_index("ix_jobs_project_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_projects_status", table_name="projects")
    op.drop_index("ix_projects_user_id", table_name="projects")
    op.drop_table("projects")
    op.drop_table("users")

    bind = op.get_bind()
    job_status_enum.drop(bind, checkfirst=True)
    project_status_enum.drop(bind, checkfirst=True)
    content_type_enum.drop(bind, checkfirst=True)
