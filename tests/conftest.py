"""Shared pytest fixtures for async database testing.

Provides an in-memory SQLite database (aiosqlite + StaticPool so every
session sees the same data), a session factory matching production
settings, and small builders for users, projects and jobs.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cgi_pipeline.models import Base, ContentType, Job, Project, User
from cgi_pipeline.services.project_service import ProjectRequest, create_project_with_job


@pytest_asyncio.fixture
async def async_engine():
    """Create an async SQLite engine with all tables.

    Yields:
        AsyncEngine: Configured test database engine.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (expire_on_commit=False like production)."""
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory):
    """A single session for direct store tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory) -> Callable[..., Awaitable[User]]:
    """Builder: await make_user(credits=50, is_admin=False)."""
    counter = {"n": 0}

    async def _make_user(credits: int = 50, is_admin: bool = False) -> User:
        counter["n"] += 1
        async with session_factory() as db, db.begin():
            user = User(email=f"user{counter['n']}@example.com", credits=credits, is_admin=is_admin)
            db.add(user)
            await db.flush()
        return user

    return _make_user


def _project_request(**overrides: Any) -> ProjectRequest:
    fields: dict[str, Any] = {
        "title": "Walnut side table",
        "content_type": ContentType.IMAGE,
        "product_image_url": "https://cdn.example.com/table.png",
        "scene_image_url": "https://cdn.example.com/living-room.jpg",
        "description": "Warm evening light, minimal living room",
    }
    fields.update(overrides)
    return ProjectRequest(**fields)


@pytest.fixture
def project_request() -> Callable[..., ProjectRequest]:
    """Builder for a valid ProjectRequest; keyword overrides replace defaults."""
    return _project_request


@pytest.fixture
def make_project(session_factory, make_user) -> Callable[..., Awaitable[tuple[Project, Job]]]:
    """Builder: await make_project(content_type=ContentType.VIDEO, ...) -> (project, job).

    Goes through create_project_with_job so rows look exactly like
    production rows. The owning user is an admin so credits never block.
    """

    async def _make_project(user: User | None = None, **overrides: Any) -> tuple[Project, Job]:
        owner = user or await make_user(is_admin=True)
        async with session_factory() as db, db.begin():
            project, job = await create_project_with_job(
                db, owner.id, _project_request(**overrides)
            )
        return project, job

    return _make_project
