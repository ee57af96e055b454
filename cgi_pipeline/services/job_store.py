"""Job Store: persistence and atomic claim for jobs and their projects.

Every function takes the AsyncSession it must use. The caller owns the
transaction boundary, so several store calls can share one transaction
(project creation) or each run in their own short transaction (pipeline
stage updates):

    async with session_factory() as db, db.begin():
        claimed = await claim_job(db, job_id)

Concurrency:
    claim_job() is the only concurrency-safety mechanism. It issues
    UPDATE jobs SET status='processing' ... WHERE id=:id AND status='pending'
    and reports whether a row changed. Two workers racing on the same job:
    exactly one sees True. Losing a claim is not an error.

Store-level I/O errors (SQLAlchemyError) propagate to the caller untouched.
"""

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cgi_pipeline.constants import DEFAULT_MAX_RETRIES, JOB_TYPE_CGI_GENERATION
from cgi_pipeline.exceptions import JobNotFoundError, ProjectNotFoundError
from cgi_pipeline.models import Job, JobStatus, Project, utcnow
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)


def _apply_fields(row: Job | Project, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        if name in {"id", "created_at"} or not hasattr(type(row), name):
            raise ValueError(f"Cannot update field {name!r} on {type(row).__name__}")
        setattr(row, name, value)
    row.updated_at = utcnow()


async def enqueue_job(
    session: AsyncSession,
    *,
    user_id: int,
    project_id: int,
    priority: int,
    data: dict[str, Any] | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    job_type: str = JOB_TYPE_CGI_GENERATION,
) -> Job:
    """Insert a new job as pending with progress 0 and retry_count 0.

    The row is flushed (so job.id is available) but not committed.
    """
    job = Job(
        type=job_type,
        user_id=user_id,
        project_id=project_id,
        status=JobStatus.PENDING,
        priority=priority,
        progress=0,
        retry_count=0,
        max_retries=max_retries,
        data=data,
    )
    session.add(job)
    await session.flush()

    log.info("job_enqueued", job_id=job.id, project_id=project_id, priority=priority)
    return job


async def get_next_pending_job(session: AsyncSession) -> Job | None:
    """Return the highest-priority, oldest pending job. Read-only, not a claim."""
    stmt = (
        select(Job)
        .where(Job.status == JobStatus.PENDING)
        .order_by(Job.priority.desc(), Job.created_at.asc(), Job.id.asc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def claim_job(session: AsyncSession, job_id: int) -> bool:
    """Atomically move a job from pending to processing.

    Returns:
        True if this call changed the row, False if the job was already
        taken (or does not exist).
    """
    now = utcnow()
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
        .values(status=JobStatus.PROCESSING, processing_started_at=now, updated_at=now)
    )
    result = await session.execute(stmt)
    claimed = result.rowcount == 1  # type: ignore[attr-defined]

    if claimed:
        log.info("job_claimed", job_id=job_id)
    else:
        log.info("job_claim_lost", job_id=job_id)
    return claimed


async def get_job(session: AsyncSession, job_id: int) -> Job:
    """Load a job by id.

    Raises:
        JobNotFoundError: If no such job exists.
    """
    job = await session.get(Job, job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def get_latest_job_for_project(session: AsyncSession, project_id: int) -> Job | None:
    stmt = (
        select(Job)
        .where(Job.project_id == project_id)
        .order_by(Job.created_at.desc(), Job.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def update_job(session: AsyncSession, job_id: int, **fields: Any) -> Job:
    """Merge fields into a job, always bumping updated_at."""
    job = await get_job(session, job_id)
    _apply_fields(job, fields)
    return job


async def increment_retry_count(session: AsyncSession, job_id: int) -> int:
    """Add one to retry_count in SQL and return the new value."""
    stmt = (
        update(Job)
        .where(Job.id == job_id)
        .values(retry_count=Job.retry_count + 1, updated_at=utcnow())
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:  # type: ignore[attr-defined]
        raise JobNotFoundError(f"Job {job_id} not found")

    new_count = await session.scalar(select(Job.retry_count).where(Job.id == job_id))
    return int(new_count or 0)


async def mark_job_completed(
    session: AsyncSession, job_id: int, result: dict[str, Any]
) -> Job:
    """Set the job completed with its result payload and completed_at."""
    job = await get_job(session, job_id)
    _apply_fields(
        job,
        {
            "status": JobStatus.COMPLETED,
            "progress": 100,
            "result": result,
            "completed_at": utcnow(),
        },
    )
    log.info("job_completed", job_id=job_id)
    return job


async def mark_job_failed(session: AsyncSession, job_id: int, error_message: str) -> Job:
    """Set the job failed with its error message and completed_at."""
    job = await get_job(session, job_id)
    _apply_fields(
        job,
        {
            "status": JobStatus.FAILED,
            "error_message": error_message,
            "completed_at": utcnow(),
        },
    )
    log.warning("job_failed", job_id=job_id, error_message=error_message)
    return job


async def get_project(session: AsyncSession, project_id: int) -> Project:
    """Load a project by id.

    Raises:
        ProjectNotFoundError: If no such project exists.
    """
    project = await session.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return project


async def update_project(session: AsyncSession, project_id: int, **fields: Any) -> Project:
    """Merge fields into a project, always bumping updated_at.

    Status changes still go through Project.VALID_TRANSITIONS.
    """
    project = await get_project(session, project_id)
    _apply_fields(project, fields)
    return project
