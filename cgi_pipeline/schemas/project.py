"""Pydantic schemas for projects, jobs, recovery and cost summaries.

Schema Naming Convention:
    - ProjectCreate: POST /api/projects body
    - *Response: API responses, built from ORM rows (from_attributes=True)

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, model_validator

from cgi_pipeline.constants import MAX_VIDEO_DURATION_SECONDS, MIN_VIDEO_DURATION_SECONDS
from cgi_pipeline.models import ContentType, JobStatus, ProjectStatus
from cgi_pipeline.services.project_service import ProjectRequest


class ProjectCreate(BaseModel):
    """Schema for creating a project (and its job).

    Video-only fields are ignored for image projects. Credits are charged
    at creation: image 2, video 13 (<= 5 s) or 18, +5 with audio.
    """

    title: str = Field(..., min_length=1, max_length=255, description="Project title")
    description: str | None = Field(
        default=None, description="What the user wants to see (input to prompt enhancement)"
    )
    content_type: ContentType = Field(..., description="image or video")
    product_image_url: HttpUrl = Field(..., description="Public URL of the product photo")
    scene_image_url: HttpUrl | None = Field(default=None, description="Public URL of the scene")
    scene_video_url: HttpUrl | None = Field(
        default=None, description="Optional reference video whose motion is analyzed"
    )
    video_duration_seconds: int = Field(
        default=MIN_VIDEO_DURATION_SECONDS,
        ge=MIN_VIDEO_DURATION_SECONDS,
        le=MAX_VIDEO_DURATION_SECONDS,
        description="Clip length for video projects",
    )
    include_audio: bool = Field(default=False, description="Chain a sound task onto the video")
    resolution: str = Field(default="1024x1024", max_length=20)
    quality: str = Field(default="standard", max_length=20)

    @model_validator(mode="after")
    def _audio_needs_video(self) -> "ProjectCreate":
        if self.include_audio and self.content_type != ContentType.VIDEO:
            raise ValueError("include_audio is only valid for video projects")
        return self

    def to_request(self) -> ProjectRequest:
        return ProjectRequest(
            title=self.title,
            description=self.description,
            content_type=self.content_type,
            product_image_url=str(self.product_image_url),
            scene_image_url=str(self.scene_image_url) if self.scene_image_url else None,
            scene_video_url=str(self.scene_video_url) if self.scene_video_url else None,
            video_duration_seconds=self.video_duration_seconds,
            include_audio=self.include_audio,
            resolution=self.resolution,
            quality=self.quality,
        )


class ProjectResponse(BaseModel):
    """Schema for project API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    content_type: ContentType
    status: ProjectStatus
    progress: int
    credits_used: int
    output_image_url: str | None = None
    output_video_url: str | None = None
    error_message: str | None = None
    created_at: datetime


class ProjectCreatedResponse(ProjectResponse):
    job_id: int = Field(..., description="Job enqueued for this project")


class JobStatusResponse(BaseModel):
    """Schema for job status responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    status: JobStatus
    progress: int
    retry_count: int
    error_message: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ProjectStatusDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: ProjectStatus
    progress: int
    output_image_url: str | None = None
    output_video_url: str | None = None
    error_message: str | None = None


class ProjectStatusResponse(BaseModel):
    """Project plus its latest job."""

    project: ProjectStatusDetail
    job: JobStatusResponse | None = None


class ProcessJobResponse(BaseModel):
    message: str
    job_id: int | None = None
    project_id: int | None = None


class RecoveryResult(BaseModel):
    project_id: int
    title: str
    status: str = Field(
        ..., description="recovered, still_processing_or_failed, skipped or error"
    )
    video_url: str | None = None
    reason: str | None = None


class RecoveryResponse(BaseModel):
    recovered: int
    total: int
    results: list[RecoveryResult]


class ProjectCost(BaseModel):
    id: int
    title: str
    content_type: str
    status: str
    actual_cost_millicents: int
    actual_cost_usd: str
    created_at: datetime


class CostSummaryResponse(BaseModel):
    """Actual provider spend. Millicent amounts are 1/1000 USD."""

    total_cost_millicents: int
    total_cost_usd: str
    total_projects: int
    image_projects: int
    video_projects: int
    projects: list[ProjectCost]
