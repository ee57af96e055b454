"""Project creation and read-side queries.

create_project_with_job() is the job creation trigger: the project row, the
credit deduction and the job row are written in the caller's transaction,
so they commit or roll back together:

    async with session_factory() as db, db.begin():
        project, job = await create_project_with_job(db, user_id, payload)

The status/cost helpers scope every lookup to the calling user; someone
else's project or job is reported exactly like a missing one.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cgi_pipeline.constants import (
    CREDIT_COSTS,
    JOB_PRIORITY,
    MAX_VIDEO_DURATION_SECONDS,
    MIN_VIDEO_DURATION_SECONDS,
    SHORT_VIDEO_MAX_SECONDS,
)
from cgi_pipeline.exceptions import (
    InsufficientCreditsError,
    JobNotFoundError,
    ProjectNotFoundError,
)
from cgi_pipeline.models import ContentType, Job, Project, ProjectStatus, User, utcnow
from cgi_pipeline.services import job_store
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ProjectRequest:
    """Validated input for a new project."""

    title: str
    content_type: ContentType
    product_image_url: str
    description: str | None = None
    scene_image_url: str | None = None
    scene_video_url: str | None = None
    video_duration_seconds: int = MIN_VIDEO_DURATION_SECONDS
    include_audio: bool = False
    resolution: str = "1024x1024"
    quality: str = "standard"

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValueError("title must not be empty")
        for name in ("product_image_url", "scene_image_url", "scene_video_url"):
            url = getattr(self, name)
            if url is not None and not url.startswith(("http://", "https://")):
                raise ValueError(f"{name} must be an http(s) URL")
        if not (
            MIN_VIDEO_DURATION_SECONDS
            <= self.video_duration_seconds
            <= MAX_VIDEO_DURATION_SECONDS
        ):
            raise ValueError(
                f"video_duration_seconds must be between {MIN_VIDEO_DURATION_SECONDS} "
                f"and {MAX_VIDEO_DURATION_SECONDS}"
            )

    def job_data(self) -> dict[str, Any]:
        """Opaque payload stored on the job row."""
        return {
            "contentType": self.content_type.value,
            "videoDurationSeconds": self.video_duration_seconds,
            "productImageUrl": self.product_image_url,
            "sceneImageUrl": self.scene_image_url,
            "sceneVideoUrl": self.scene_video_url,
            "description": self.description,
            "includeAudio": self.include_audio,
        }


def calculate_credits(
    content_type: ContentType, duration_seconds: int = 5, include_audio: bool = False
) -> int:
    """Credits charged for a project.

    Images cost a flat price. Videos are priced short (<= 5 s) or long,
    plus a surcharge when audio is requested.
    """
    if content_type == ContentType.IMAGE:
        return CREDIT_COSTS["image_generation"]

    if duration_seconds <= SHORT_VIDEO_MAX_SECONDS:
        credits = CREDIT_COSTS["video_short"]
    else:
        credits = CREDIT_COSTS["video_long"]
    if include_audio:
        credits += CREDIT_COSTS["audio_surcharge"]
    return credits


async def create_project_with_job(
    session: AsyncSession, user_id: int, request: ProjectRequest
) -> tuple[Project, Job]:
    """Create the project, charge the user and enqueue its job.

    Nothing is committed here; the caller's transaction decides.

    Raises:
        InsufficientCreditsError: Non-admin user cannot pay.
        ValueError: Unknown user.
    """
    user = await session.get(User, user_id, with_for_update=True)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    credits_needed = calculate_credits(
        request.content_type, request.video_duration_seconds, request.include_audio
    )
    if not user.is_admin:
        if user.credits < credits_needed:
            raise InsufficientCreditsError(required=credits_needed, available=user.credits)
        user.credits -= credits_needed
        user.updated_at = utcnow()

    project = Project(
        user_id=user_id,
        title=request.title,
        description=request.description,
        content_type=request.content_type,
        product_image_url=request.product_image_url,
        scene_image_url=request.scene_image_url,
        scene_video_url=request.scene_video_url,
        video_duration_seconds=request.video_duration_seconds,
        include_audio=request.include_audio,
        resolution=request.resolution,
        quality=request.quality,
        status=ProjectStatus.PENDING,
        progress=0,
        credits_used=credits_needed,
        actual_cost=0,
    )
    session.add(project)
    await session.flush()

    job = await job_store.enqueue_job(
        session,
        user_id=user_id,
        project_id=project.id,
        priority=JOB_PRIORITY[request.content_type.value],
        data=request.job_data(),
    )

    log.info(
        "project_created",
        project_id=project.id,
        job_id=job.id,
        user_id=user_id,
        content_type=request.content_type.value,
        credits_used=credits_needed,
        charged=not user.is_admin,
    )
    return project, job


async def get_user_project(session: AsyncSession, user_id: int, project_id: int) -> Project:
    """Load a project owned by user_id.

    Raises:
        ProjectNotFoundError: Missing or owned by someone else.
    """
    project = await session.get(Project, project_id)
    if project is None or project.user_id != user_id:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return project


async def get_project_status(
    session: AsyncSession, user_id: int, project_id: int
) -> tuple[Project, Job | None]:
    """Project plus its most recent job."""
    project = await get_user_project(session, user_id, project_id)
    job = await job_store.get_latest_job_for_project(session, project.id)
    return project, job


async def get_job_status(session: AsyncSession, user_id: int, job_id: int) -> Job:
    """Load a job owned by user_id.

    Raises:
        JobNotFoundError: Missing or owned by someone else.
    """
    job = await session.get(Job, job_id)
    if job is None or job.user_id != user_id:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def summarize_actual_costs(session: AsyncSession, user_id: int) -> dict[str, Any]:
    """Provider spend across the user's projects (millicents and USD)."""
    result = await session.execute(
        select(Project).where(Project.user_id == user_id).order_by(Project.created_at.desc())
    )
    projects = list(result.scalars().all())

    total = sum(p.actual_cost for p in projects)
    return {
        "total_cost_millicents": total,
        "total_cost_usd": f"{total / 1000:.4f}",
        "total_projects": len(projects),
        "image_projects": sum(1 for p in projects if p.content_type == ContentType.IMAGE),
        "video_projects": sum(1 for p in projects if p.content_type == ContentType.VIDEO),
        "projects": [
            {
                "id": p.id,
                "title": p.title,
                "content_type": p.content_type.value,
                "status": p.status.value,
                "actual_cost_millicents": p.actual_cost,
                "actual_cost_usd": f"{p.actual_cost / 1000:.4f}",
                "created_at": p.created_at,
            }
            for p in projects
        ],
    }
