"""Pipeline Orchestrator: drives one job's project through the stage machine.

Pipeline Flow:
    pending -> processing (10%)
            -> enhancing_prompt (25%)     prompt enhancer (+ optional motion analysis)
            -> generating_image (60%)     image generator, writes output_image_url
            -> generating_video (80%)     task poller (video projects only)
            -> under_review (85-90%)      entered as soon as a task id is obtained
            -> completed (100%)
    any stage -> failed (error_message set, actual_cost kept)

Architecture Pattern: "Short Transaction + State Machine"
    - The orchestrator never holds a session across a provider call. Every
      status/progress write opens its own short transaction:
          async with self.session_factory() as db, db.begin(): ...
    - A stage first writes its status/progress, THEN calls the provider, so
      the visible status never lags behind the work.
    - Provider cost is added to the CostLedger in a finally block (providers
      may bill failed calls). Every later write persists ledger.total_cost,
      including the failure write, so incurred cost is never lost.
    - Any stage exception aborts the run: project and job are both marked
      failed with the exception message. Nothing is retried here.

Usage:
    orchestrator = PipelineOrchestrator(job_id, session_factory, collaborators, poller)
    succeeded = await orchestrator.execute_pipeline()
"""

import asyncio
import time
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline.clients.piapi import PiAPIError, is_retriable_error
from cgi_pipeline.constants import (
    ACTUAL_COSTS,
    PROGRESS_COMPLETED,
    PROGRESS_ENHANCING_PROMPT,
    PROGRESS_GENERATING_IMAGE,
    PROGRESS_GENERATING_VIDEO,
    PROGRESS_PROCESSING,
    PROGRESS_SOUND_TASK_SUBMITTED,
    PROGRESS_VIDEO_TASK_SUBMITTED,
)
from cgi_pipeline.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobNotFoundError,
    MissingArtifactUrlError,
    MissingTaskIdError,
    ProjectNotFoundError,
    ProviderTaskFailedError,
    TaskStatusCheckError,
    TaskTimeoutError,
)
from cgi_pipeline.models import ProjectStatus
from cgi_pipeline.services import job_store
from cgi_pipeline.services.collaborators import Collaborators, GenerationInput
from cgi_pipeline.services.cost_ledger import CostLedger
from cgi_pipeline.services.task_poller import TaskPoller, VideoRequest, VideoTaskResult
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)


def classify_error(exception: BaseException) -> tuple[bool, str]:
    """Classify a stage failure as transient or permanent, for logging.

    Returns:
        Tuple of (is_transient, error_type)

    Example:
        >>> classify_error(TaskTimeoutError("t-1", 30, 10))
        (True, 'task_timeout')
    """
    if isinstance(exception, TaskTimeoutError):
        return True, "task_timeout"
    if isinstance(exception, TaskStatusCheckError):
        return True, "status_check_failed"
    if isinstance(exception, ProviderTaskFailedError):
        return False, "provider_failed"
    if isinstance(exception, MissingTaskIdError | MissingArtifactUrlError):
        return False, "contract_violation"
    if isinstance(exception, PiAPIError):
        return exception.status_code == 429 or exception.status_code >= 500, "provider_http_error"
    if isinstance(exception, httpx.HTTPError):
        return is_retriable_error(exception), "http_error"
    if isinstance(exception, TimeoutError | asyncio.TimeoutError):
        return True, "timeout_error"
    if isinstance(exception, SQLAlchemyError):
        return True, "database_error"
    if isinstance(exception, ConfigurationError):
        return False, "configuration_error"
    if isinstance(exception, InvalidStateTransitionError):
        return False, "invalid_transition"
    if isinstance(exception, ValueError):
        return False, "invalid_parameters"
    return False, "unknown_error"


class PipelineOrchestrator:
    """Runs the stage machine for one claimed job.

    Attributes:
        job_id: Job being executed (already claimed, status processing)
        ledger: Cost/progress ledger of this run. Each stage replaces it
            with a new value; it is never mutated in place.
    """

    def __init__(
        self,
        job_id: int,
        session_factory: async_sessionmaker[AsyncSession],
        collaborators: Collaborators,
        poller: TaskPoller | None = None,
    ):
        self.job_id = job_id
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.poller = poller
        self.project_id: int | None = None
        self.ledger = CostLedger()
        self.log = get_logger(__name__)

    async def execute_pipeline(self) -> bool:
        """Execute every stage for the job's project.

        Returns:
            True if the project completed, False if it was marked failed
            (or the job/project could not be loaded).
        """
        started = time.monotonic()

        try:
            project = await self._load_project()
        except (JobNotFoundError, ProjectNotFoundError) as e:
            self.log.error("pipeline_load_failed", job_id=self.job_id, error=str(e))
            return False

        self.log.info(
            "pipeline_started",
            job_id=self.job_id,
            project_id=project.project_id,
            content_type=project.content_type.value,
        )

        try:
            await self._set_stage(ProjectStatus.PROCESSING, PROGRESS_PROCESSING)
            prompt = await self._enhance_prompt_stage(project)
            image_url = await self._generate_image_stage(project, prompt)

            video: VideoTaskResult | None = None
            if project.is_video:
                video = await self._generate_video_stage(project, prompt, image_url)

            await self._complete(image_url, video)
        except Exception as e:
            is_transient, error_type = classify_error(e)
            self.log.error(
                "pipeline_failed",
                job_id=self.job_id,
                project_id=self.project_id,
                error_type=error_type,
                is_transient=is_transient,
                error_message=str(e),
                actual_cost=self.ledger.total_cost,
            )
            await self._fail(str(e))
            return False

        self.log.info(
            "pipeline_completed",
            job_id=self.job_id,
            project_id=self.project_id,
            duration_seconds=round(time.monotonic() - started, 2),
            actual_cost=self.ledger.total_cost,
            cost_breakdown=self.ledger.breakdown(),
        )
        return True

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _enhance_prompt_stage(self, project: GenerationInput) -> str:
        await self._set_stage(ProjectStatus.ENHANCING_PROMPT, PROGRESS_ENHANCING_PROMPT)

        motion_notes = await self._analyze_motion(project)

        try:
            prompt = await self.collaborators.prompt_enhancer.enhance_prompt(
                project, motion_notes=motion_notes
            )
        finally:
            self.ledger = self.ledger.charge(
                "prompt_enhancement", ACTUAL_COSTS["prompt_enhancement"]
            )

        await self._update_project(enhanced_prompt=prompt)
        return prompt

    async def _analyze_motion(self, project: GenerationInput) -> str | None:
        """Best-effort analysis of the scene video; failures keep the pipeline going."""
        analyzer = self.collaborators.motion_analyzer
        if analyzer is None or not project.scene_video_url:
            return None

        try:
            notes = await analyzer.analyze_motion(project.scene_video_url)
        except Exception as e:
            self.log.warning(
                "motion_analysis_failed",
                project_id=project.project_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
        finally:
            self.ledger = self.ledger.charge("motion_analysis", ACTUAL_COSTS["motion_analysis"])

        self.log.info("motion_analysis_completed", project_id=project.project_id)
        return notes

    async def _generate_image_stage(self, project: GenerationInput, prompt: str) -> str:
        await self._set_stage(ProjectStatus.GENERATING_IMAGE, PROGRESS_GENERATING_IMAGE)

        try:
            image_url = await self.collaborators.image_generator.generate_image(project, prompt)
        finally:
            self.ledger = self.ledger.charge("image_generation", ACTUAL_COSTS["image_generation"])

        await self._update_project(output_image_url=image_url)
        return image_url

    async def _generate_video_stage(
        self, project: GenerationInput, prompt: str, image_url: str
    ) -> VideoTaskResult:
        await self._set_stage(ProjectStatus.GENERATING_VIDEO, PROGRESS_GENERATING_VIDEO)

        if self.poller is None:
            raise ConfigurationError("KLING_API_KEY is not configured; cannot generate video")

        request = VideoRequest(
            prompt=prompt,
            image_url=image_url,
            duration=project.video_duration_seconds,
            include_audio=project.include_audio,
        )
        try:
            video = await self.poller.generate_video(
                request,
                on_video_task=self._on_video_task,
                on_sound_task=self._on_sound_task,
                on_poll_progress=self._on_poll_progress,
            )
        finally:
            self.ledger = self.ledger.charge("video_generation", ACTUAL_COSTS["video_generation"])

        await self._update_project(
            output_video_url=video.video_url,
            full_task_details=video.task_details,
        )
        return video

    async def _complete(self, image_url: str, video: VideoTaskResult | None) -> None:
        self.ledger = self.ledger.advance(PROGRESS_COMPLETED)
        result: dict[str, Any] = {
            "outputImageUrl": image_url,
            "outputVideoUrl": video.video_url if video else None,
            "actualCost": self.ledger.total_cost,
        }
        if video is not None:
            result["audioApplied"] = video.audio_applied

        async with self.session_factory() as db, db.begin():
            await job_store.update_project(
                db,
                self._require_project_id(),
                status=ProjectStatus.COMPLETED,
                progress=PROGRESS_COMPLETED,
                actual_cost=self.ledger.total_cost,
                error_message=None,
            )
            await job_store.mark_job_completed(db, self.job_id, result)

    async def _fail(self, error_message: str) -> None:
        """Mark project and job failed, keeping the cost incurred so far."""
        try:
            async with self.session_factory() as db, db.begin():
                if self.project_id is not None:
                    await job_store.update_project(
                        db,
                        self.project_id,
                        status=ProjectStatus.FAILED,
                        error_message=error_message,
                        actual_cost=self.ledger.total_cost,
                    )
                await job_store.mark_job_failed(db, self.job_id, error_message)
        except (SQLAlchemyError, InvalidStateTransitionError) as e:
            self.log.error(
                "pipeline_failure_not_recorded",
                job_id=self.job_id,
                project_id=self.project_id,
                error=str(e),
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Task poller callbacks
    # ------------------------------------------------------------------

    async def _on_video_task(self, task_id: str) -> None:
        self.ledger = self.ledger.advance(PROGRESS_VIDEO_TASK_SUBMITTED)
        await self._update_project(
            external_video_task_id=task_id,
            status=ProjectStatus.UNDER_REVIEW,
            progress=self.ledger.progress,
        )
        self.log.info(
            "video_task_id_saved",
            project_id=self.project_id,
            task_id=task_id,
        )

    async def _on_sound_task(self, task_id: str) -> None:
        self.ledger = self.ledger.advance(PROGRESS_SOUND_TASK_SUBMITTED)
        await self._update_project(
            external_sound_task_id=task_id,
            progress=self.ledger.progress,
        )
        self.log.info(
            "sound_task_id_saved",
            project_id=self.project_id,
            task_id=task_id,
        )

    async def _on_poll_progress(self, progress: int) -> None:
        advanced = self.ledger.advance(progress)
        if advanced is self.ledger:
            return
        self.ledger = advanced

        # A missed progress write must not fail a video that is still rendering
        try:
            await self._update_project(progress=self.ledger.progress)
        except SQLAlchemyError as e:
            self.log.warning(
                "poll_progress_update_failed",
                project_id=self.project_id,
                progress=self.ledger.progress,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Persistence helpers (short transactions)
    # ------------------------------------------------------------------

    async def _load_project(self) -> GenerationInput:
        async with self.session_factory() as db:
            job = await job_store.get_job(db, self.job_id)
            project = await job_store.get_project(db, job.project_id)
            self.project_id = project.id
            self.ledger = CostLedger.opening(actual_cost=project.actual_cost)
            return GenerationInput.from_project(project)

    def _require_project_id(self) -> int:
        if self.project_id is None:
            raise ProjectNotFoundError(f"Job {self.job_id} has no loaded project")
        return self.project_id

    async def _set_stage(self, status: ProjectStatus, progress: int) -> None:
        self.ledger = self.ledger.advance(progress)
        async with self.session_factory() as db, db.begin():
            await job_store.update_project(
                db,
                self._require_project_id(),
                status=status,
                progress=self.ledger.progress,
                actual_cost=self.ledger.total_cost,
            )
            await job_store.update_job(db, self.job_id, progress=self.ledger.progress)

        self.log.info(
            "stage_started",
            job_id=self.job_id,
            project_id=self.project_id,
            status=status.value,
            progress=self.ledger.progress,
        )

    async def _update_project(self, **fields: Any) -> None:
        async with self.session_factory() as db, db.begin():
            await job_store.update_project(
                db, self._require_project_id(), actual_cost=self.ledger.total_cost, **fields
            )
            if "progress" in fields:
                await job_store.update_job(db, self.job_id, progress=fields["progress"])
