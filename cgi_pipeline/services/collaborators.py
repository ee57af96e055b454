"""Generation collaborators used by the pipeline stages.

The orchestrator only depends on three small protocols:

    PromptEnhancer.enhance_prompt(project, motion_notes=None) -> str
    ImageGenerator.generate_image(project, prompt) -> str (public URL)
    MotionAnalyzer.analyze_motion(scene_video_url) -> str

Implementations receive a GenerationInput snapshot instead of the ORM row so
no provider call ever runs while a database session is open.

The shipped implementations call Gemini (see clients/gemini.py) and publish
generated image bytes through catbox.moe. Prompt wording is deliberately
simple; only the call contract matters to the pipeline.
"""

from dataclasses import dataclass
from typing import Protocol

from cgi_pipeline.clients.catbox import CatboxClient
from cgi_pipeline.clients.gemini import GeminiClient
from cgi_pipeline.models import ContentType, Project
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class GenerationInput:
    """Read-only copy of the project fields the stages need."""

    project_id: int
    content_type: ContentType
    title: str
    description: str | None
    product_image_url: str
    scene_image_url: str | None = None
    scene_video_url: str | None = None
    video_duration_seconds: int = 5
    include_audio: bool = False
    resolution: str = "1024x1024"
    quality: str = "standard"

    @classmethod
    def from_project(cls, project: Project) -> "GenerationInput":
        return cls(
            project_id=project.id,
            content_type=project.content_type,
            title=project.title,
            description=project.description,
            product_image_url=project.product_image_url,
            scene_image_url=project.scene_image_url,
            scene_video_url=project.scene_video_url,
            video_duration_seconds=project.video_duration_seconds,
            include_audio=project.include_audio,
            resolution=project.resolution,
            quality=project.quality,
        )

    @property
    def is_video(self) -> bool:
        return self.content_type == ContentType.VIDEO


class PromptEnhancer(Protocol):
    async def enhance_prompt(
        self, project: GenerationInput, motion_notes: str | None = None
    ) -> str: ...


class ImageGenerator(Protocol):
    async def generate_image(self, project: GenerationInput, prompt: str) -> str: ...


class MotionAnalyzer(Protocol):
    async def analyze_motion(self, scene_video_url: str) -> str: ...


@dataclass(frozen=True)
class Collaborators:
    """Bundle handed to the orchestrator. motion_analyzer is optional."""

    prompt_enhancer: PromptEnhancer
    image_generator: ImageGenerator
    motion_analyzer: MotionAnalyzer | None = None


class GeminiPromptEnhancer:
    """Turns the user's description into a scene-composition prompt."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    async def enhance_prompt(
        self, project: GenerationInput, motion_notes: str | None = None
    ) -> str:
        lines = [
            "Write one detailed prompt for a photorealistic CGI product shot.",
            "The first image is the product; keep its shape, colours and branding exact.",
            f"Title: {project.title}",
            f"Description: {project.description or project.title}",
            f"Target resolution: {project.resolution}, quality: {project.quality}.",
        ]
        media = [project.product_image_url]
        if project.scene_image_url:
            lines.append("The second image is the scene; place the product naturally inside it.")
            media.append(project.scene_image_url)
        if project.is_video:
            lines.append(
                f"The image seeds a {project.video_duration_seconds} second video; "
                "end with one short paragraph describing the camera and product motion."
            )
        if motion_notes:
            lines.append(f"Match this reference motion: {motion_notes}")
        lines.append("Answer with the prompt only.")

        prompt = await self.gemini.generate_text("\n".join(lines), media_urls=media)
        log.info(
            "prompt_enhanced",
            project_id=project.project_id,
            prompt_length=len(prompt),
        )
        return prompt


class GeminiImageGenerator:
    """Composes the product into the scene and publishes the image."""

    def __init__(self, gemini: GeminiClient, uploader: CatboxClient):
        self.gemini = gemini
        self.uploader = uploader

    async def generate_image(self, project: GenerationInput, prompt: str) -> str:
        media = [project.product_image_url]
        if project.scene_image_url:
            media.append(project.scene_image_url)

        image_bytes = await self.gemini.generate_image(prompt, media_urls=media)
        url = await self.uploader.upload_bytes(image_bytes, f"project_{project.project_id}.png")
        log.info("image_generated", project_id=project.project_id, url=url)
        return url


class GeminiMotionAnalyzer:
    """Describes camera and subject motion of a reference video."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    async def analyze_motion(self, scene_video_url: str) -> str:
        return await self.gemini.generate_text(
            "Describe the camera movement, subject motion and pacing of this video "
            "in at most five sentences, so another clip can reproduce it.",
            media_urls=[scene_video_url],
        )
