"""
Story writing and scene generation processors (LLM, JSON mode).
"""

import json
from typing import Any, Dict, List

from shared.errors import GenerationError, UnrecoverableStageError
from shared.logging import get_logger
from shared.models import Scene, Story
from api_gateway.services.queue_service import QueueJob
from modules.generation.base import GenerationWorker
from modules.generation.billing import billed_operation
from modules.generation.cost_estimator import estimate_operation_credits
from modules.generation.providers import LLMProvider

logger = get_logger("generation.script")

STORY_SYSTEM_PROMPT = """You are a screenwriter for short narrated videos.

Write a story that can be told in the requested duration and tone.
Return JSON: {"title": str, "synopsis": str, "body": str}"""

SCENE_SYSTEM_PROMPT = """You are a storyboard artist.

Split the story into the requested number of scenes. For every scene write the
narration read over it, a detailed still-image prompt and a short camera/motion
prompt for animating that image.
Return JSON: {"scenes": [{"narration": str, "image_prompt": str,
"motion_prompt": str, "duration_seconds": number}]}"""


def _build_story_prompt(data: Dict[str, Any]) -> str:
    return json.dumps({
        "title": data.get("title"),
        "idea": data.get("idea"),
        "tone": data.get("tone", "cinematic"),
        "target_duration_seconds": data.get("target_duration_seconds", 60),
        "scene_count": data.get("scene_count", 5),
    })


def parse_scenes(project_id: str, payload: Dict[str, Any], scene_count: int, status: str) -> List[Scene]:
    """
    Turn the LLM's scene list into Scene records.

    Raises:
        GenerationError: If no usable scene came back
    """
    raw = payload.get("scenes")
    if not isinstance(raw, list):
        raise GenerationError("LLM response has no scene list")
    scenes = []
    for item in raw[:scene_count]:
        if not isinstance(item, dict) or not item.get("image_prompt"):
            continue
        scenes.append(Scene(
            project_id=project_id,
            index=len(scenes),
            status=status,
            narration=(item.get("narration") or "").strip() or None,
            image_prompt=item["image_prompt"].strip(),
            motion_prompt=(item.get("motion_prompt") or "").strip() or None,
            duration_seconds=item.get("duration_seconds"),
        ))
    if not scenes:
        raise GenerationError("LLM returned no usable scenes")
    return scenes


class StoryWorker(GenerationWorker):
    """write-story: idea -> Story."""

    operation_type = "story_writing"

    def __init__(self, *args, llm: LLMProvider, **kwargs):
        super().__init__(*args, **kwargs)
        self.llm = llm

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        data = job.data
        self.require(data, "project_id", "idea")
        estimate = estimate_operation_credits(self.operation_type)
        async with billed_operation(
            self.ledger, self.queue, job, data["user_id"], data["project_id"], estimate, self.operation_type
        ) as hold:
            await self.queue.update_progress(job, 10)
            result = await self.llm.complete_json(STORY_SYSTEM_PROMPT, _build_story_prompt(data))
            body = result.data.get("body")
            if not body:
                raise GenerationError("LLM story response has no body", job_id=job.id)
            story = Story(
                project_id=data["project_id"],
                title=result.data.get("title") or data.get("title") or "Untitled",
                synopsis=result.data.get("synopsis"),
                body=body,
            )
            async with self.store.session() as s:
                await s.save_story(story)
            hold.charge(
                self.actual_credits(result.cost_usd, estimate),
                provider="openai",
                model=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )
        await self.queue.update_progress(job, 100)
        logger.info("Story written", extra={"project_id": data["project_id"], "story_id": story.id})
        return {"story_id": story.id}


class SceneWorker(GenerationWorker):
    """generate-scenes: Story -> Scenes."""

    operation_type = "scene_generation"

    def __init__(self, *args, llm: LLMProvider, **kwargs):
        super().__init__(*args, **kwargs)
        self.llm = llm

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        data = job.data
        self.require(data, "project_id")
        project_id = data["project_id"]
        scene_count = int(data.get("scene_count") or 5)
        async with self.store.session() as s:
            story = await s.get_story(project_id)
        if story is None:
            raise UnrecoverableStageError(f"Project {project_id} has no story", job_id=job.id)

        estimate = estimate_operation_credits(self.operation_type)
        async with billed_operation(
            self.ledger, self.queue, job, data["user_id"], project_id, estimate, self.operation_type
        ) as hold:
            await self.queue.update_progress(job, 10)
            result = await self.llm.complete_json(
                SCENE_SYSTEM_PROMPT,
                json.dumps({
                    "story": story.body,
                    "scene_count": scene_count,
                    "aspect_ratio": data.get("aspect_ratio", "16:9"),
                }),
            )
            scenes = parse_scenes(project_id, result.data, scene_count, data.get("scene_status") or "scripted")
            async with self.store.session() as s:
                await s.replace_scenes(project_id, scenes)
            hold.charge(
                self.actual_credits(result.cost_usd, estimate),
                provider="openai",
                model=result.model,
                scene_count=len(scenes),
            )
        await self.queue.update_progress(job, 100)
        logger.info("Scenes generated", extra={"project_id": project_id, "scene_count": len(scenes)})
        return {"scene_ids": [scene.id for scene in scenes]}
