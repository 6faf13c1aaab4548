"""
Per-scene fan-out stage handlers.

Each handler emits one job per scene that has the stage's input and does not
yet have its output, so an operator retry only regenerates what is missing.
"""

from typing import Any, ClassVar, Dict, List

from shared.logging import get_logger
from shared.models import CompletionCheckResult, PreparedJob, Scene, StageHandlerContext
from modules.pipeline.stage_registry import StageHandler
from modules.pipeline.templates import TTS_GENERATION, VIDEO_GENERATION, VISUAL_GENERATION

logger = get_logger("stage_handlers.per_scene")


class PerSceneStageHandler(StageHandler):
    """Fan-out over a project's scenes."""

    input_field: ClassVar[str]
    output_field: ClassVar[str]

    def needs_work(self, scene: Scene) -> bool:
        return bool(getattr(scene, self.input_field)) and not getattr(scene, self.output_field)

    def build_payload(self, ctx: StageHandlerContext, scene: Scene) -> Dict[str, Any]:
        return {"scene_id": scene.id, "scene_index": scene.index}

    async def prepare_jobs(self, ctx: StageHandlerContext) -> List[PreparedJob]:
        async with self.store.session() as s:
            scenes = await s.list_scenes(ctx.project.id)
        return [
            PreparedJob(payload=self.build_payload(ctx, scene), unit_id=scene.id)
            for scene in scenes
            if self.needs_work(scene)
        ]

    async def on_stage_completed(self, ctx: StageHandlerContext, result: CompletionCheckResult) -> None:
        """Scenes left without output when a threshold stage passes are skipped, not retried."""
        if result.failed_jobs == 0:
            return
        async with self.store.session() as s:
            skipped = []
            for scene in await s.list_scenes(ctx.project.id):
                if self.needs_work(scene):
                    await s.update_scene(scene.id, {"status": "skipped"})
                    skipped.append(scene.id)
        logger.info(
            "Scenes skipped after threshold completion",
            extra={"run_id": ctx.run.id, "stage_id": self.stage_id, "skipped": len(skipped)}
        )


class VisualGenerationHandler(PerSceneStageHandler):
    stage_id = VISUAL_GENERATION
    input_field = "image_prompt"
    output_field = "image_url"

    def build_payload(self, ctx: StageHandlerContext, scene: Scene) -> Dict[str, Any]:
        return {
            **super().build_payload(ctx, scene),
            "media_type": "image",
            "prompt": scene.image_prompt,
            "aspect_ratio": ctx.run.frozen_config.get("aspect_ratio", "16:9"),
            "model": ctx.stage_config.get("model"),
        }


class VideoGenerationHandler(PerSceneStageHandler):
    stage_id = VIDEO_GENERATION
    input_field = "image_url"
    output_field = "video_url"

    def build_payload(self, ctx: StageHandlerContext, scene: Scene) -> Dict[str, Any]:
        return {
            **super().build_payload(ctx, scene),
            "media_type": "video",
            "prompt": scene.motion_prompt or scene.image_prompt,
            "reference_image_url": scene.image_url,
            "aspect_ratio": ctx.run.frozen_config.get("aspect_ratio", "16:9"),
            "duration_seconds": ctx.stage_config.get("clip_seconds", 5),
            "model": ctx.stage_config.get("model"),
        }


class TTSGenerationHandler(PerSceneStageHandler):
    stage_id = TTS_GENERATION
    input_field = "narration"
    output_field = "audio_url"

    def build_payload(self, ctx: StageHandlerContext, scene: Scene) -> Dict[str, Any]:
        return {
            **super().build_payload(ctx, scene),
            "text": scene.narration,
            "voice": ctx.stage_config.get("voice"),
        }
