"""Shared FastAPI dependencies.

Authentication is an external collaborator: the gateway in front of this
service puts the authenticated user id in the X-User-Id header.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cgi_pipeline import database
from cgi_pipeline.services.task_poller import TaskPoller
from cgi_pipeline.worker import PipelineRuntime


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    """Authenticated user id from the X-User-Id header (401 when missing)."""
    if not x_user_id or not x_user_id.strip().isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return int(x_user_id)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    try:
        return database.get_session_factory()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e


async def get_db_session(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for status queries."""
    async with factory() as session:
        yield session


def get_runtime(request: Request) -> PipelineRuntime | None:
    """Provider runtime created at startup, None when not configured."""
    return getattr(request.app.state, "runtime", None)


def require_runtime(runtime: PipelineRuntime | None = Depends(get_runtime)) -> PipelineRuntime:
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Generation providers are not configured",
        )
    return runtime


def require_poller(runtime: PipelineRuntime = Depends(require_runtime)) -> TaskPoller:
    if runtime.poller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="KLING_API_KEY is not configured",
        )
    return runtime.poller
