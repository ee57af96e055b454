"""Worker process entry point for the CGI generation pipeline.

Workers pull pending jobs from the jobs table and run the pipeline for each.
Any number of worker processes (and the API's auto-start path) may race for
the same job; the conditional UPDATE in job_store.claim_job() lets exactly
one of them win.

Architecture Pattern:
    - Async Execution: one process runs up to WORKER_CONCURRENCY pipelines
      as independent asyncio tasks; all job state lives in the database
    - Short Transactions: select -> claim (own transaction) -> run pipeline
      (each stage opens its own short transaction)
    - Graceful Shutdown: SIGTERM/SIGINT stop claiming, running pipelines
      are awaited before exit

Usage:
    python -m cgi_pipeline.worker
"""

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline import database
from cgi_pipeline.clients.catbox import CatboxClient
from cgi_pipeline.clients.gemini import GeminiClient
from cgi_pipeline.clients.piapi import PiAPIClient
from cgi_pipeline.config import (
    get_gemini_api_key,
    get_kling_api_key,
    get_worker_concurrency,
    get_worker_idle_sleep_seconds,
)
from cgi_pipeline.exceptions import (
    ConfigurationError,
    InvalidStateTransitionError,
    JobNotFoundError,
    ProjectNotFoundError,
)
from cgi_pipeline.models import Job, ProjectStatus
from cgi_pipeline.services import job_store
from cgi_pipeline.services.collaborators import (
    Collaborators,
    GeminiImageGenerator,
    GeminiMotionAnalyzer,
    GeminiPromptEnhancer,
)
from cgi_pipeline.services.pipeline_orchestrator import PipelineOrchestrator
from cgi_pipeline.services.task_poller import TaskPoller
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False


class PipelineRuntime:
    """Provider clients shared by every pipeline run in this process.

    Attributes:
        collaborators: Prompt/image/motion collaborators for the stages
        poller: Kling task poller, None when KLING_API_KEY is not set
            (image projects still run; video projects fail with a
            configuration error)
    """

    def __init__(
        self,
        collaborators: Collaborators,
        poller: TaskPoller | None = None,
        closers: list[Callable[[], Awaitable[None]]] | None = None,
    ):
        self.collaborators = collaborators
        self.poller = poller
        self._closers = closers or []

    @classmethod
    def from_env(cls) -> "PipelineRuntime":
        """Build the runtime from environment configuration.

        Raises:
            ConfigurationError: If GEMINI_API_KEY is not set.
        """
        gemini_key = get_gemini_api_key()
        if not gemini_key:
            raise ConfigurationError("GEMINI_API_KEY environment variable is required")

        gemini = GeminiClient(gemini_key)
        catbox = CatboxClient()
        collaborators = Collaborators(
            prompt_enhancer=GeminiPromptEnhancer(gemini),
            image_generator=GeminiImageGenerator(gemini, catbox),
            motion_analyzer=GeminiMotionAnalyzer(gemini),
        )
        closers = [gemini.close, catbox.close]

        poller = None
        kling_key = get_kling_api_key()
        if kling_key:
            piapi = PiAPIClient(kling_key)
            poller = TaskPoller(piapi)
            closers.append(piapi.close)
        else:
            log.warning("kling_api_key_missing", effect="video projects will fail")

        return cls(collaborators, poller, closers)

    async def close(self) -> None:
        for close in self._closers:
            await close()


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT: stop claiming new jobs, let running ones finish.

    Args:
        signum: Signal number
        frame: Current stack frame (unused)
    """
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def claim_next_job(session_factory: async_sessionmaker[AsyncSession]) -> Job | None:
    """Find the next pending job and claim it.

    Returns:
        The claimed job (status processing, retry_count incremented), or
        None if the queue is empty or another worker won the claim.
    """
    async with session_factory() as db:
        job = await job_store.get_next_pending_job(db)
        if job is None:
            return None
        job_id = job.id

    async with session_factory() as db, db.begin():
        if not await job_store.claim_job(db, job_id):
            return None
        await job_store.increment_retry_count(db, job_id)
        return await job_store.get_job(db, job_id)


async def run_claimed_job(
    job_id: int,
    session_factory: async_sessionmaker[AsyncSession],
    runtime: PipelineRuntime,
) -> bool:
    """Run the pipeline for a job that is already claimed.

    Also used by POST /api/projects to auto-start the job it just created.

    Returns:
        True if the project completed.
    """
    orchestrator = PipelineOrchestrator(
        job_id,
        session_factory,
        runtime.collaborators,
        runtime.poller,
    )
    try:
        return await orchestrator.execute_pipeline()
    except Exception as e:
        # Stage errors are handled by the orchestrator; this is a store failure,
        # so both rows are marked here
        log.error(
            "job_crashed",
            job_id=job_id,
            error_type=type(e).__name__,
            error=str(e),
            exc_info=True,
        )
        try:
            async with session_factory() as db, db.begin():
                job = await job_store.mark_job_failed(db, job_id, str(e))
                project = await job_store.get_project(db, job.project_id)
                if project.status not in (ProjectStatus.COMPLETED, ProjectStatus.FAILED):
                    await job_store.update_project(
                        db,
                        project.id,
                        status=ProjectStatus.FAILED,
                        error_message=str(e),
                        actual_cost=max(project.actual_cost, orchestrator.ledger.total_cost),
                    )
        except (
            SQLAlchemyError,
            InvalidStateTransitionError,
            JobNotFoundError,
            ProjectNotFoundError,
        ) as mark_error:
            log.error("job_failure_not_recorded", job_id=job_id, error=str(mark_error))
        return False


async def claim_and_run_job(
    job_id: int,
    session_factory: async_sessionmaker[AsyncSession],
    runtime: PipelineRuntime,
) -> bool:
    """Claim a specific job, then run it. Losing the claim returns False."""
    async with session_factory() as db, db.begin():
        if not await job_store.claim_job(db, job_id):
            return False
        await job_store.increment_retry_count(db, job_id)

    return await run_claimed_job(job_id, session_factory, runtime)


async def process_next_job(
    session_factory: async_sessionmaker[AsyncSession],
    runtime: PipelineRuntime,
) -> bool:
    """next pending -> claim -> increment retry_count -> run pipeline.

    Returns:
        True if a job was claimed and run (whatever its outcome).
    """
    job = await claim_next_job(session_factory)
    if job is None:
        return False

    log.info("job_processing_started", job_id=job.id, project_id=job.project_id)
    await run_claimed_job(job.id, session_factory, runtime)
    return True


async def worker_loop(
    session_factory: async_sessionmaker[AsyncSession],
    runtime: PipelineRuntime,
    concurrency: int | None = None,
    idle_sleep_seconds: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """Claim and run jobs until shutdown is requested.

    Keeps at most `concurrency` pipelines in flight. When the queue is
    empty the loop sleeps idle_sleep_seconds before looking again.

    Returns:
        Number of jobs started.
    """
    concurrency = concurrency or get_worker_concurrency()
    idle_sleep = (
        idle_sleep_seconds if idle_sleep_seconds is not None else get_worker_idle_sleep_seconds()
    )
    active: set[asyncio.Task[bool]] = set()
    started = 0

    log.info("worker_started", concurrency=concurrency, idle_sleep_seconds=idle_sleep)

    while not shutdown_requested:
        if len(active) >= concurrency:
            await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
            continue

        try:
            job = await claim_next_job(session_factory)
        except SQLAlchemyError as e:
            log.error("job_claim_error", error=str(e))
            await sleep(idle_sleep)
            continue

        if job is None:
            await sleep(idle_sleep)
            continue

        log.info("job_processing_started", job_id=job.id, project_id=job.project_id)
        task = asyncio.create_task(run_claimed_job(job.id, session_factory, runtime))
        active.add(task)
        task.add_done_callback(active.discard)
        started += 1

    if active:
        log.info("worker_draining", active_jobs=len(active))
        await asyncio.gather(*active)

    log.info("worker_stopped", jobs_started=started)
    return started


async def _run_worker() -> None:
    runtime = PipelineRuntime.from_env()
    try:
        await worker_loop(database.get_session_factory(), runtime)
    finally:
        await runtime.close()
        if database.engine is not None:
            await database.engine.dispose()
            log.info("sqlalchemy_engine_closed")


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(_run_worker())
    except (ConfigurationError, RuntimeError) as e:
        log.error("worker_configuration_error", error=str(e))
        sys.exit(1)
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()
