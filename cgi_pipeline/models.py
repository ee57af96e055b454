"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the generation pipeline.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    users: Credit balance owner (billing collaborator boundary)
    projects: User-visible unit of work moving through the stage state machine
    jobs: Queued unit of execution bound to exactly one project

Status columns store the lowercase enum value. Status changes made through
the ORM are checked against VALID_TRANSITIONS by @validates hooks; the job
claim is a conditional UPDATE and does not go through the hook.
"""

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from cgi_pipeline.constants import DEFAULT_MAX_RETRIES, JOB_TYPE_CGI_GENERATION
from cgi_pipeline.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class ContentType(enum.Enum):
    """What a project produces."""

    IMAGE = "image"
    VIDEO = "video"


class ProjectStatus(enum.Enum):
    """Stage state machine for a generation project.

    Pipeline Flow (Happy Path):
        pending -> processing -> enhancing_prompt -> generating_image
        -> generating_video -> under_review -> completed      (video)
        pending -> processing -> enhancing_prompt -> generating_image
        -> completed                                          (image)

    Any stage may move to failed. Recovery moves failed/processing projects
    forward to completed once the provider proves the task finished.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    ENHANCING_PROMPT = "enhancing_prompt"
    GENERATING_IMAGE = "generating_image"
    GENERATING_VIDEO = "generating_video"
    UNDER_REVIEW = "under_review"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(enum.Enum):
    """Queue status of a job. completed and failed are final."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def _check_transition(
    transitions: dict[Any, list[Any]], current: enum.Enum | None, value: enum.Enum
) -> enum.Enum:
    # Initial assignment and re-assigning the same status are always allowed
    if current is None or current == value:
        return value

    if value not in transitions.get(current, []):
        raise InvalidStateTransitionError(
            f"Invalid transition: {current.value} → {value.value}",
            from_status=current,
            to_status=value,
        )
    return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """Owner of projects and of the credit balance charged at creation."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    projects: Mapped[list["Project"]] = relationship("Project", back_populates="user")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, credits={self.credits}, is_admin={self.is_admin})>"


class Project(Base):
    """One requested image or video, tracked through the pipeline stages.

    Attributes:
        content_type: image or video.
        status: Stage state machine value (see ProjectStatus).
        progress: 0-100, never decreases while the project is non-terminal.
        output_image_url / output_video_url: Set only when the stage succeeds.
        error_message: Set only when status becomes failed.
        actual_cost: Provider spend in millicents, kept on failure.
        external_video_task_id / external_sound_task_id: Provider task ids,
            written the moment they are obtained. Recovery keys off them.
        full_task_details: Last raw provider payload for the video/sound task.
    """

    __tablename__ = "projects"

    VALID_TRANSITIONS = {
        ProjectStatus.PENDING: [ProjectStatus.PROCESSING, ProjectStatus.FAILED],
        ProjectStatus.PROCESSING: [
            ProjectStatus.ENHANCING_PROMPT,
            ProjectStatus.COMPLETED,  # recovery
            ProjectStatus.FAILED,
        ],
        ProjectStatus.ENHANCING_PROMPT: [ProjectStatus.GENERATING_IMAGE, ProjectStatus.FAILED],
        ProjectStatus.GENERATING_IMAGE: [
            ProjectStatus.GENERATING_VIDEO,
            ProjectStatus.COMPLETED,  # image-only projects
            ProjectStatus.FAILED,
        ],
        ProjectStatus.GENERATING_VIDEO: [ProjectStatus.UNDER_REVIEW, ProjectStatus.FAILED],
        ProjectStatus.UNDER_REVIEW: [ProjectStatus.COMPLETED, ProjectStatus.FAILED],
        ProjectStatus.FAILED: [
            ProjectStatus.COMPLETED,  # recovery
            ProjectStatus.PENDING,  # retried with a new job
        ],
        ProjectStatus.COMPLETED: [],
    }

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_type: Mapped[ContentType] = mapped_column(
        Enum(
            ContentType,
            native_enum=True,
            name="contenttype",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    product_image_url: Mapped[str] = mapped_column(Text, nullable=False)
    scene_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    scene_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    include_audio: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution: Mapped[str] = mapped_column(String(20), nullable=False, default="1024x1024")
    quality: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")

    status: Mapped[ProjectStatus] = mapped_column(
        Enum(
            ProjectStatus,
            native_enum=True,
            name="projectstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ProjectStatus.PENDING,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    enhanced_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    external_video_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_sound_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    full_task_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user: Mapped["User"] = relationship("User", back_populates="projects")
    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="project")

    @validates("status")
    def validate_status_change(self, key: str, value: ProjectStatus) -> ProjectStatus:
        """Reject status changes not listed in VALID_TRANSITIONS.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)  # type: ignore[return-value]

    @property
    def is_video(self) -> bool:
        return self.content_type == ContentType.VIDEO

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, content_type={self.content_type.value!r}, "
            f"status={self.status.value!r}, progress={self.progress})>"
        )


class Job(Base):
    """Queued pipeline execution for one project.

    At most one worker holds a job in processing: the pending -> processing
    move is a conditional UPDATE (see services/job_store.claim_job).

    Attributes:
        priority: Higher is served first among pending jobs, then FIFO.
        data: Opaque payload describing what to generate.
        result: Opaque success payload (artifact URLs, cost).
    """

    __tablename__ = "jobs"

    VALID_TRANSITIONS = {
        JobStatus.PENDING: [JobStatus.PROCESSING],
        JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.FAILED],
        JobStatus.COMPLETED: [],
        JobStatus.FAILED: [],
    }

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=JOB_TYPE_CGI_GENERATION
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            native_enum=True,
            name="jobstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_RETRIES
    )

    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    project: Mapped["Project"] = relationship("Project", back_populates="jobs")

    # Pending-queue scan: WHERE status='pending' ORDER BY priority DESC, created_at
    __table_args__ = (Index("ix_jobs_status_priority_created_at", "status", "priority", "created_at"),)

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Reject status changes not listed in VALID_TRANSITIONS."""
        return _check_transition(self.VALID_TRANSITIONS, self.status, value)  # type: ignore[return-value]

    def __repr__(self) -> str:
        return (
            f"<Job(id={self.id}, project_id={self.project_id}, "
            f"status={self.status.value!r}, priority={self.priority})>"
        )
