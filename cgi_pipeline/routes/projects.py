"""Project routes.

- POST /api/projects                create project + job, auto-start the job
- GET  /api/projects/{id}/status    project and latest job status
- POST /api/projects/recover        run recovery for the caller's projects
- GET  /api/actual-costs            actual provider spend per project

Pattern for creation:
- Validate body (pydantic)
- One short transaction: project + credit deduction + job
- Queue the claim-and-run as a background task
- Return immediately with the project and job id
"""

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline.exceptions import InsufficientCreditsError, ProjectNotFoundError
from cgi_pipeline.routes.dependencies import (
    get_current_user_id,
    get_db_session,
    get_runtime,
    get_session_factory,
    require_poller,
)
from cgi_pipeline.schemas.project import (
    CostSummaryResponse,
    JobStatusResponse,
    ProjectCreate,
    ProjectCreatedResponse,
    ProjectResponse,
    ProjectStatusDetail,
    ProjectStatusResponse,
    RecoveryResponse,
)
from cgi_pipeline.services import project_service
from cgi_pipeline.services.recovery_service import recover_user_projects
from cgi_pipeline.services.task_poller import TaskPoller
from cgi_pipeline.worker import PipelineRuntime, claim_and_run_job

log = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["projects"])


@router.post(
    "/projects",
    response_model=ProjectCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(
    body: ProjectCreate,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    runtime: PipelineRuntime | None = Depends(get_runtime),
) -> ProjectCreatedResponse:
    """Create a project and its job in one transaction.

    Returns:
        201 Created: Project with its job id
        400 Bad Request: Insufficient credits
        404 Not Found: Unknown user
    """
    try:
        request = body.to_request()
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        ) from e

    try:
        async with factory() as db, db.begin():
            project, job = await project_service.create_project_with_job(db, user_id, request)
    except InsufficientCreditsError as e:
        log.info("project_rejected_insufficient_credits", user_id=user_id, required=e.required)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    if runtime is not None:
        background_tasks.add_task(claim_and_run_job, job.id, factory, runtime)
    else:
        log.warning("job_auto_start_skipped", job_id=job.id, reason="runtime_not_configured")

    log.info("project_created", project_id=project.id, job_id=job.id, user_id=user_id)
    return ProjectCreatedResponse(
        **ProjectResponse.model_validate(project).model_dump(), job_id=job.id
    )


@router.get("/projects/{project_id}/status", response_model=ProjectStatusResponse)
async def get_project_status(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
) -> ProjectStatusResponse:
    try:
        project, job = await project_service.get_project_status(db, user_id, project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found") from e

    return ProjectStatusResponse(
        project=ProjectStatusDetail.model_validate(project),
        job=JobStatusResponse.model_validate(job) if job else None,
    )


@router.post("/projects/recover", response_model=RecoveryResponse)
async def recover_projects(
    user_id: int = Depends(get_current_user_id),
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    poller: TaskPoller = Depends(require_poller),
) -> RecoveryResponse:
    """Complete the caller's failed/processing projects whose provider task finished."""
    summary = await recover_user_projects(factory, user_id, poller)
    return RecoveryResponse.model_validate(summary)


@router.get("/actual-costs", response_model=CostSummaryResponse)
async def get_actual_costs(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db_session),
) -> CostSummaryResponse:
    summary = await project_service.summarize_actual_costs(db, user_id)
    return CostSummaryResponse.model_validate(summary)
