"""
Video assembly processor.

Rendering happens downstream of this service: assembly writes a render
manifest (ordered clips, stills and narration per scene) to storage and
points the project's output at it.
"""

import json
from typing import Any, Dict, List

from shared.errors import UnrecoverableStageError
from shared.logging import get_logger
from shared.models import GeneratedMedia, Scene, utc_now
from api_gateway.services.queue_service import QueueJob
from modules.generation.base import GenerationWorker, storage_key
from modules.generation.billing import billed_operation
from modules.generation.cost_estimator import estimate_operation_credits
from modules.generation.providers import StorageUploader

logger = get_logger("generation.assembly")

MANIFEST_VERSION = 1


def build_render_manifest(project_id: str, scenes: List[Scene], aspect_ratio: str) -> Dict[str, Any]:
    """Scenes in index order; a scene without a clip falls back to its still."""
    tracks = []
    for scene in sorted(scenes, key=lambda sc: sc.index):
        visual_url = scene.video_url or scene.image_url
        if not visual_url:
            continue
        tracks.append({
            "scene_id": scene.id,
            "index": scene.index,
            "visual_type": "video" if scene.video_url else "image",
            "visual_url": visual_url,
            "audio_url": scene.audio_url,
            "narration": scene.narration,
            "duration_seconds": scene.duration_seconds,
        })
    return {
        "version": MANIFEST_VERSION,
        "project_id": project_id,
        "aspect_ratio": aspect_ratio,
        "scenes": tracks,
        "created_at": utc_now().isoformat(),
    }


class AssemblyWorker(GenerationWorker):
    """assemble-video: usable scenes -> render manifest."""

    operation_type = "video_assembly"

    def __init__(self, *args, storage: StorageUploader, **kwargs):
        super().__init__(*args, **kwargs)
        self.storage = storage

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        data = job.data
        self.require(data, "project_id")
        project_id = data["project_id"]
        wanted = set(data.get("scene_ids") or [])
        async with self.store.session() as s:
            scenes = [sc for sc in await s.list_scenes(project_id) if not wanted or sc.id in wanted]
        manifest = build_render_manifest(project_id, scenes, data.get("aspect_ratio", "16:9"))
        if not manifest["scenes"]:
            raise UnrecoverableStageError(f"Project {project_id} has no scenes to assemble", job_id=job.id)

        estimate = estimate_operation_credits(self.operation_type)
        async with billed_operation(
            self.ledger, self.queue, job, data["user_id"], project_id, estimate, self.operation_type
        ) as hold:
            content = json.dumps(manifest, indent=2).encode("utf-8")
            record = GeneratedMedia(
                user_id=data["user_id"],
                project_id=project_id,
                media_type="render_manifest",
                status="processing",
                provider="internal",
            )
            key = storage_key(data["user_id"], record.id, "json")
            url = await self.storage.upload_file_with_retry(key, content, "application/json")
            async with self.store.session() as s:
                await s.insert_media(record.model_copy(update={
                    "status": "completed",
                    "url": url,
                    "storage_key": key,
                    "mime_type": "application/json",
                    "file_size": len(content),
                    "credits_used": estimate,
                }))
                await s.update_project(project_id, {"output_url": url, "updated_at": utc_now()})
            hold.charge(estimate, provider="internal", scene_count=len(manifest["scenes"]))

        await self.queue.update_progress(job, 100)
        logger.info(
            "Render manifest written",
            extra={"project_id": project_id, "scene_count": len(manifest["scenes"]), "url": url}
        )
        return {"output_url": url, "scene_count": len(manifest["scenes"])}
