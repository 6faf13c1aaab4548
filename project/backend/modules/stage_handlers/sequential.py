"""
Single-job stage handlers: story writing, scene generation, assembly.
"""

from typing import List

from shared.errors import UnrecoverableStageError
from shared.models import PreparedJob, StageHandlerContext
from modules.pipeline.stage_registry import StageHandler
from modules.pipeline.templates import SCENE_GENERATION, STORY_WRITING, VIDEO_ASSEMBLY


class StoryWritingHandler(StageHandler):
    """One job turning the project idea into a story."""

    stage_id = STORY_WRITING

    async def prepare_jobs(self, ctx: StageHandlerContext) -> List[PreparedJob]:
        config = ctx.run.frozen_config
        return [PreparedJob(payload={
            "title": ctx.project.title,
            "idea": ctx.project.idea,
            "tone": config.get("tone", "cinematic"),
            "target_duration_seconds": config.get("target_duration_seconds", 60),
            "scene_count": config.get("scene_count", 5),
        })]


class SceneGenerationHandler(StageHandler):
    """One job cutting the story into scenes."""

    stage_id = SCENE_GENERATION

    async def prepare_jobs(self, ctx: StageHandlerContext) -> List[PreparedJob]:
        async with self.store.session() as s:
            story = await s.get_story(ctx.project.id)
        if story is None:
            raise UnrecoverableStageError(f"Project {ctx.project.id} has no story to split into scenes")
        return [PreparedJob(payload={
            "story_id": story.id,
            "scene_count": ctx.run.frozen_config.get("scene_count", 5),
            "aspect_ratio": ctx.run.frozen_config.get("aspect_ratio", "16:9"),
        })]


class VideoAssemblyHandler(StageHandler):
    """One job assembling every usable scene into the final render."""

    stage_id = VIDEO_ASSEMBLY

    async def prepare_jobs(self, ctx: StageHandlerContext) -> List[PreparedJob]:
        async with self.store.session() as s:
            scenes = await s.list_scenes(ctx.project.id)
        usable = [scene.id for scene in scenes if scene.video_url or scene.image_url]
        if not usable:
            raise UnrecoverableStageError(f"Project {ctx.project.id} has no scenes with visuals to assemble")
        return [PreparedJob(payload={
            "scene_ids": usable,
            "aspect_ratio": ctx.run.frozen_config.get("aspect_ratio", "16:9"),
        })]
