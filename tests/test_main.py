"""Tests for the FastAPI application entry point.

This module tests:
- Health check endpoint returns correct status
- Generation flags reflect the configured runtime
- Routers are mounted
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from cgi_pipeline.main import app


@pytest.fixture
def client() -> TestClient:
    """Create test client for FastAPI app (lifespan not started).

    Returns:
        TestClient: Synchronous client for testing FastAPI endpoints.
    """
    return TestClient(app)


@pytest.fixture
def clear_runtime():
    yield
    app.state.runtime = None


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_endpoint_returns_200(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200

    def test_health_without_runtime(self, client: TestClient, clear_runtime) -> None:
        app.state.runtime = None

        data = client.get("/health").json()

        assert data == {
            "status": "healthy",
            "service": "cgi-pipeline",
            "generation_enabled": False,
            "video_enabled": False,
        }

    def test_health_with_image_only_runtime(self, client: TestClient, clear_runtime) -> None:
        app.state.runtime = MagicMock(poller=None)

        data = client.get("/health").json()

        assert data["generation_enabled"] is True
        assert data["video_enabled"] is False

    def test_health_with_video_runtime(self, client: TestClient, clear_runtime) -> None:
        app.state.runtime = MagicMock(poller=MagicMock())

        data = client.get("/health").json()

        assert data["video_enabled"] is True


def test_routes_mounted() -> None:
    paths = {route.path for route in app.routes}

    assert "/api/projects" in paths
    assert "/api/projects/{project_id}/status" in paths
    assert "/api/projects/recover" in paths
    assert "/api/actual-costs" in paths
    assert "/api/jobs/process" in paths
    assert "/api/jobs/{job_id}/status" in paths


def test_lifespan_without_gemini_key_disables_runtime(monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with TestClient(app) as client:
        data = client.get("/health").json()

    assert data["generation_enabled"] is False
