"""
Pipeline template registry and the built-in AI video template.
"""

import copy
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.models import PipelineStageDefinition, PipelineTemplate, StageQueueConfig
from modules.pipeline.dag import validate_template

logger = get_logger("pipeline.templates")

AI_VIDEO_TEMPLATE_ID = "ai-video"

STORY_WRITING = "story-writing"
SCENE_GENERATION = "scene-generation"
VISUAL_GENERATION = "visual-generation"
TTS_GENERATION = "tts-generation"
VIDEO_GENERATION = "video-generation"
VIDEO_ASSEMBLY = "video-assembly"

# Queues are shared by stages that run on the same worker pool
STORY_QUEUE = "story-writing"
SCENE_QUEUE = "scene-generation"
MEDIA_QUEUE = "media-generation"
TTS_QUEUE = "tts-generation"
ASSEMBLY_QUEUE = "video-assembly"


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` onto a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_ai_video_template() -> PipelineTemplate:
    """Idea -> story -> scenes -> (visuals -> clips, narration) -> assembly."""
    text_queue = StageQueueConfig(concurrency=5, retries=3, backoff_type="exponential", backoff_delay=5000)
    media_queue = StageQueueConfig(concurrency=5, retries=3, backoff_type="exponential", backoff_delay=10000)
    return PipelineTemplate(
        id=AI_VIDEO_TEMPLATE_ID,
        name="AI Video",
        slug="ai-video",
        description="Turns an idea into a narrated, scene-by-scene video",
        version=1,
        output_type="video",
        is_built_in=True,
        stages=[
            PipelineStageDefinition(
                stage_id=STORY_WRITING,
                label="Story Writing",
                queue_name=STORY_QUEUE,
                job_name="write-story",
                queue_config=text_queue,
                progress_percent=10,
                project_status="writing_story",
            ),
            PipelineStageDefinition(
                stage_id=SCENE_GENERATION,
                label="Scene Generation",
                depends_on=[STORY_WRITING],
                queue_name=SCENE_QUEUE,
                job_name="generate-scenes",
                queue_config=text_queue,
                progress_percent=25,
                project_status="generating_scenes",
                scene_status_on_complete="scripted",
            ),
            PipelineStageDefinition(
                stage_id=VISUAL_GENERATION,
                label="Visual Generation",
                execution_mode="parallel-per-scene",
                completion_strategy="all-scenes-done",
                depends_on=[SCENE_GENERATION],
                queue_name=MEDIA_QUEUE,
                job_name="generate-image",
                queue_config=media_queue,
                progress_percent=40,
                project_status="generating_visuals",
                scene_status_on_complete="visual_generated",
                config_key="visuals",
            ),
            PipelineStageDefinition(
                stage_id=TTS_GENERATION,
                label="Narration",
                execution_mode="parallel-per-scene",
                completion_strategy="threshold",
                completion_threshold=0.8,
                depends_on=[SCENE_GENERATION],
                queue_name=TTS_QUEUE,
                job_name="synthesize-narration",
                queue_config=text_queue,
                progress_percent=55,
                project_status="generating_audio",
                scene_status_on_complete="audio_generated",
                can_be_disabled=True,
                config_key="tts",
            ),
            PipelineStageDefinition(
                stage_id=VIDEO_GENERATION,
                label="Video Generation",
                execution_mode="parallel-per-scene",
                completion_strategy="threshold",
                completion_threshold=0.8,
                depends_on=[VISUAL_GENERATION],
                queue_name=MEDIA_QUEUE,
                job_name="generate-video",
                queue_config=StageQueueConfig(concurrency=3, retries=3, backoff_type="exponential", backoff_delay=10000),
                progress_percent=70,
                project_status="generating_video",
                scene_status_on_complete="video_generated",
                can_be_disabled=True,
                config_key="video",
            ),
            PipelineStageDefinition(
                stage_id=VIDEO_ASSEMBLY,
                label="Video Assembly",
                depends_on=[VIDEO_GENERATION, TTS_GENERATION],
                queue_name=ASSEMBLY_QUEUE,
                job_name="assemble-video",
                queue_config=StageQueueConfig(concurrency=2, retries=2, backoff_type="fixed", backoff_delay=5000),
                progress_percent=90,
                project_status="assembling",
            ),
        ],
        default_config={
            "scene_count": 5,
            "tone": "cinematic",
            "aspect_ratio": "16:9",
            "target_duration_seconds": 60,
            "stages": {
                "visuals": {"model": None},
                "tts": {"enabled": True, "voice": None},
                "video": {"enabled": True, "model": None, "clip_seconds": 5},
            },
        },
    )


class TemplateRegistry:
    """Validated templates keyed by id; the latest registered version wins."""

    def __init__(self, default_template_id: str = AI_VIDEO_TEMPLATE_ID):
        self._templates: Dict[str, PipelineTemplate] = {}
        self.default_template_id = default_template_id

    def register(self, template: PipelineTemplate) -> None:
        """
        Validate and register a template.

        Raises:
            TemplateError: If the template's DAG is malformed
        """
        validate_template(template)
        existing = self._templates.get(template.id)
        if existing and existing.version > template.version:
            logger.warning(
                "Ignoring older template version",
                extra={"template_id": template.id, "version": template.version, "current": existing.version}
            )
            return
        self._templates[template.id] = template
        logger.info("Template registered", extra={"template_id": template.id, "version": template.version})

    def get(self, template_id: str) -> Optional[PipelineTemplate]:
        return self._templates.get(template_id)

    def get_required(self, template_id: str) -> PipelineTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def resolve(self, template_id: Optional[str]) -> PipelineTemplate:
        """The requested template, or the default one when it is unknown."""
        if template_id and template_id in self._templates:
            return self._templates[template_id]
        if template_id:
            logger.warning("Unknown template, using default", extra={"template_id": template_id})
        return self.get_required(self.default_template_id)

    def list_templates(self) -> List[PipelineTemplate]:
        return list(self._templates.values())


def create_default_registry() -> TemplateRegistry:
    registry = TemplateRegistry()
    registry.register(build_ai_video_template())
    return registry
