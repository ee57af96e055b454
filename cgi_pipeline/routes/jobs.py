"""Job routes.

- POST /api/jobs/process          claim the next pending job and run it
- GET  /api/jobs/{id}/status      job status (caller's own jobs only)
"""

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline.exceptions import JobNotFoundError
from cgi_pipeline.routes.dependencies import (
    get_current_user_id,
    get_db_session,
    get_session_factory,
    require_runtime,
)
from cgi_pipeline.schemas.project import JobStatusResponse, ProcessJobResponse
from cgi_pipeline.services import project_service
from cgi_pipeline.worker import PipelineRuntime, claim_next_job, run_claimed_job

log = structlog.get_logger()
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("/process", response_model=ProcessJobResponse)
async def process_next_job(
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    runtime: PipelineRuntime = Depends(require_runtime),
) -> ProcessJobResponse:
    """Claim the next pending job and start its pipeline in the background."""
    job = await claim_next_job(factory)
    if job is None:
        return ProcessJobResponse(message="No pending jobs")

    background_tasks.add_task(run_claimed_job, job.id, factory, runtime)
    log.info("job_processing_triggered", job_id=job.id, project_id=job.project_id, by_user=user_id)
    return ProcessJobResponse(
        message="Job processing started", job_id=job.id, project_id=job.project_id
    )


@router.get("/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(
    job_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
) -> JobStatusResponse:
    try:
        job = await project_service.get_job_status(db, user_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from e
    return JobStatusResponse.model_validate(job)
