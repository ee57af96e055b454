"""Pydantic schemas for validation and serialization."""

from cgi_pipeline.schemas.project import (
    CostSummaryResponse,
    JobStatusResponse,
    ProcessJobResponse,
    ProjectCreate,
    ProjectCreatedResponse,
    ProjectResponse,
    ProjectStatusResponse,
    RecoveryResponse,
)

__all__ = [
    "CostSummaryResponse",
    "JobStatusResponse",
    "ProcessJobResponse",
    "ProjectCreate",
    "ProjectCreatedResponse",
    "ProjectResponse",
    "ProjectStatusResponse",
    "RecoveryResponse",
]
