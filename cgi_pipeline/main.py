"""FastAPI application for the CGI generation pipeline.

Web service entry point: project creation (which auto-starts the job),
status polling, recovery and cost reporting. Long-running generation runs
in background tasks here and in separate worker processes
(python -m cgi_pipeline.worker).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from cgi_pipeline.exceptions import ConfigurationError
from cgi_pipeline.routes import jobs, projects
from cgi_pipeline.worker import PipelineRuntime

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage provider clients.

    Startup:
    - Build the PipelineRuntime (Gemini, Catbox, PiAPI clients) if configured

    Shutdown:
    - Close the runtime's HTTP connections
    """
    runtime: PipelineRuntime | None = None
    try:
        runtime = PipelineRuntime.from_env()
        log.info("pipeline_runtime_ready", video_enabled=runtime.poller is not None)
    except ConfigurationError as e:
        log.warning(
            "pipeline_runtime_disabled",
            message="Jobs will be queued but not auto-started",
            error=str(e),
        )
    app.state.runtime = runtime

    yield  # Application runs here

    if runtime is not None:
        await runtime.close()


app = FastAPI(
    title="CGI Pipeline",
    description="Async generation pipeline for product images and videos",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(projects.router)
app.include_router(jobs.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness check.

    Returns:
        JSONResponse: Status and whether generation providers are configured
    """
    runtime = getattr(app.state, "runtime", None)
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "cgi-pipeline",
            "generation_enabled": runtime is not None,
            "video_enabled": runtime is not None and runtime.poller is not None,
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "cgi_pipeline.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
