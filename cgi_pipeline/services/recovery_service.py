"""Recovery Service: repair projects whose provider task finished anyway.

A video task keeps rendering on the provider side even if our process died
mid-poll or the poll budget ran out. Recovery looks at the caller's projects
that are failed/processing but carry a provider task id, checks each task
ONCE, and moves the project forward to completed when the provider proves
the artifact exists.

Rules:
    - Only ever moves a project to completed; never to failed.
    - Never touches the job row (the job stays failed and is not reopened).
    - The status is re-checked inside the update transaction, so a project
      that completed in the meantime is left alone.

Usage:
    summary = await recover_user_projects(session_factory, user_id, poller)
    # {"recovered": 1, "total": 2, "results": [...]}
"""

from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline.clients.piapi import PiAPIError
from cgi_pipeline.constants import PROGRESS_COMPLETED
from cgi_pipeline.models import Project, ProjectStatus
from cgi_pipeline.services import job_store
from cgi_pipeline.services.task_poller import TaskPoller
from cgi_pipeline.utils.logging import get_logger, new_correlation_id

log = get_logger(__name__)

RECOVERABLE_STATUSES = (ProjectStatus.FAILED, ProjectStatus.PROCESSING)


@dataclass(frozen=True)
class RecoveryCandidate:
    project_id: int
    title: str
    status: ProjectStatus
    include_audio: bool
    video_task_id: str | None
    sound_task_id: str | None
    output_video_url: str | None


async def find_recovery_candidates(
    session: AsyncSession, user_id: int
) -> list[RecoveryCandidate]:
    """Failed/processing projects of user_id that have a provider task id."""
    stmt = (
        select(Project)
        .where(
            Project.user_id == user_id,
            Project.status.in_(RECOVERABLE_STATUSES),
            or_(
                Project.external_video_task_id.is_not(None),
                Project.external_sound_task_id.is_not(None),
            ),
        )
        .order_by(Project.id)
    )
    result = await session.execute(stmt)
    return [
        RecoveryCandidate(
            project_id=p.id,
            title=p.title,
            status=p.status,
            include_audio=p.include_audio,
            video_task_id=p.external_video_task_id,
            sound_task_id=p.external_sound_task_id,
            output_video_url=p.output_video_url,
        )
        for p in result.scalars().all()
    ]


async def _completed_artifact(poller: TaskPoller, task_id: str) -> str | None:
    """Single status check; the artifact URL if the task completed, else None."""
    snapshot = await poller.check_task(task_id)
    if snapshot.is_completed and snapshot.artifact_url:
        return snapshot.artifact_url
    return None


async def recover_project(
    session_factory: async_sessionmaker[AsyncSession],
    poller: TaskPoller,
    candidate: RecoveryCandidate,
) -> dict[str, Any]:
    """Check one candidate's provider tasks and complete it if possible."""
    correlation_id = new_correlation_id()
    video_url = candidate.output_video_url
    recovered_url: str | None = None

    try:
        if candidate.video_task_id and not candidate.output_video_url:
            video_url = await _completed_artifact(poller, candidate.video_task_id)
            recovered_url = video_url
    except (PiAPIError, httpx.HTTPError) as e:
        log.warning(
            "recovery_check_failed",
            correlation_id=correlation_id,
            project_id=candidate.project_id,
            error=str(e),
        )
        return {
            "project_id": candidate.project_id,
            "title": candidate.title,
            "status": "error",
            "reason": str(e),
        }

    if candidate.sound_task_id and candidate.include_audio and video_url:
        try:
            with_audio = await _completed_artifact(poller, candidate.sound_task_id)
        except (PiAPIError, httpx.HTTPError) as e:
            # Audio is additive; keep whatever video was recovered
            log.warning(
                "recovery_sound_check_failed",
                correlation_id=correlation_id,
                project_id=candidate.project_id,
                sound_task_id=candidate.sound_task_id,
                error=str(e),
            )
            with_audio = None
        if with_audio:
            # The sound task's output is the same video with audio attached
            recovered_url = with_audio

    if recovered_url is None:
        log.info(
            "recovery_nothing_found",
            correlation_id=correlation_id,
            project_id=candidate.project_id,
        )
        return {
            "project_id": candidate.project_id,
            "title": candidate.title,
            "status": "still_processing_or_failed",
            "reason": "No completed video found" if not video_url else "Audio task not completed",
        }

    async with session_factory() as db, db.begin():
        project = await job_store.get_project(db, candidate.project_id)
        if project.status not in RECOVERABLE_STATUSES:
            return {
                "project_id": candidate.project_id,
                "title": candidate.title,
                "status": "skipped",
                "reason": f"Project is now {project.status.value}",
            }
        await job_store.update_project(
            db,
            candidate.project_id,
            status=ProjectStatus.COMPLETED,
            progress=PROGRESS_COMPLETED,
            output_video_url=recovered_url,
            error_message=None,
        )

    log.info(
        "project_recovered",
        correlation_id=correlation_id,
        project_id=candidate.project_id,
        previous_status=candidate.status.value,
        video_url=recovered_url,
    )
    return {
        "project_id": candidate.project_id,
        "title": candidate.title,
        "status": "recovered",
        "video_url": recovered_url,
    }


async def recover_user_projects(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: int,
    poller: TaskPoller,
) -> dict[str, Any]:
    """Run recovery over every candidate of user_id.

    Returns:
        {"recovered": int, "total": int, "results": [per-project dicts]}
    """
    async with session_factory() as db:
        candidates = await find_recovery_candidates(db, user_id)

    log.info("recovery_started", user_id=user_id, candidates=len(candidates))

    results = [await recover_project(session_factory, poller, c) for c in candidates]
    recovered = sum(1 for r in results if r["status"] == "recovered")

    log.info(
        "recovery_finished",
        user_id=user_id,
        recovered=recovered,
        total=len(candidates),
    )
    return {"recovered": recovered, "total": len(candidates), "results": results}
