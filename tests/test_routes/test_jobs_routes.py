"""Tests for the job routes."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from cgi_pipeline.main import app
from cgi_pipeline.models import JobStatus
from cgi_pipeline.routes.dependencies import get_runtime, get_session_factory
from cgi_pipeline.services import job_store


@pytest.fixture
def runtime():
    return MagicMock(poller=None)


@pytest_asyncio.fixture
async def jobs_api(session_factory, runtime):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_runtime] = lambda: runtime
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestProcessJob:
    """POST /api/jobs/process"""

    @pytest.mark.asyncio
    async def test_no_pending_jobs(self, jobs_api):
        response = await jobs_api.post("/api/jobs/process", headers={"X-User-Id": "1"})

        assert response.status_code == 200
        assert response.json() == {"message": "No pending jobs", "job_id": None, "project_id": None}

    @pytest.mark.asyncio
    async def test_claims_and_starts_next_job(
        self, jobs_api, make_project, session_factory, runtime
    ):
        project, job = await make_project()

        with patch(
            "cgi_pipeline.routes.jobs.run_claimed_job", new_callable=AsyncMock
        ) as mock_run:
            response = await jobs_api.post("/api/jobs/process", headers={"X-User-Id": "1"})

        assert response.status_code == 200
        assert response.json() == {
            "message": "Job processing started",
            "job_id": job.id,
            "project_id": project.id,
        }
        mock_run.assert_awaited_once_with(job.id, session_factory, runtime)

        async with session_factory() as db:
            claimed = await job_store.get_job(db, job.id)
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.retry_count == 1

    @pytest.mark.asyncio
    async def test_requires_runtime(self, jobs_api, make_project):
        await make_project()
        app.dependency_overrides[get_runtime] = lambda: None

        response = await jobs_api.post("/api/jobs/process", headers={"X-User-Id": "1"})

        assert response.status_code == 503


class TestJobStatus:
    """GET /api/jobs/{id}/status"""

    @pytest.mark.asyncio
    async def test_owner_sees_job(self, jobs_api, make_user, make_project):
        user = await make_user(is_admin=True)
        _, job = await make_project(user=user)

        response = await jobs_api.get(
            f"/api/jobs/{job.id}/status", headers={"X-User-Id": str(user.id)}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == job.id
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert data["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_other_user_gets_404(self, jobs_api, make_user, make_project):
        owner = await make_user(is_admin=True)
        stranger = await make_user()
        _, job = await make_project(user=owner)

        response = await jobs_api.get(
            f"/api/jobs/{job.id}/status", headers={"X-User-Id": str(stranger.id)}
        )

        assert response.status_code == 404
