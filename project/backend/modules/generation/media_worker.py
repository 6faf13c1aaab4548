"""
Per-scene media processors.

A GeneratedMedia record tracks each output: it is created on the first
attempt, reused by retries, and moves pending -> processing ->
completed | failed. The scene gets the uploaded URL on success.
"""

import time
from typing import Any, ClassVar, Dict, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.models import GeneratedMedia, utc_now
from api_gateway.services.queue_service import QueueJob
from modules.generation.base import GenerationWorker, download_bytes, storage_key, will_retry
from modules.generation.billing import billed_operation
from modules.generation.cost_estimator import estimate_job_credits
from modules.generation.providers import MediaProvider, MediaResult, StorageUploader

logger = get_logger("generation.media")

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "audio/mpeg": "mp3",
}
SCENE_URL_FIELDS = {"image": "image_url", "video": "video_url", "audio": "audio_url"}


class SceneMediaWorker(GenerationWorker):
    """Shared lifecycle for one generated file attached to a scene."""

    provider_name: ClassVar[str] = "replicate"
    prompt_field: ClassVar[str] = "prompt"

    def __init__(self, *args, storage: StorageUploader, **kwargs):
        super().__init__(*args, **kwargs)
        self.storage = storage

    def media_type_for(self, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def generate(self, data: Dict[str, Any], media_type: str) -> MediaResult:
        raise NotImplementedError

    async def _media_record(self, job: QueueJob, media_type: str) -> str:
        media_id = job.data.get("media_id")
        if media_id:
            return media_id
        data = job.data
        record = GeneratedMedia(
            user_id=data["user_id"],
            project_id=data.get("project_id"),
            scene_id=data.get("scene_id"),
            media_type=media_type,
            provider=self.provider_name,
            model=data.get("model"),
            prompt=data.get(self.prompt_field),
        )
        async with self.store.session() as s:
            await s.insert_media(record)
        await self.queue.update_job_data(job, {"media_id": record.id})
        return record.id

    async def process(self, job: QueueJob) -> Dict[str, Any]:
        data = job.data
        media_type = self.media_type_for(data)
        self.require(data, self.prompt_field)
        operation_type = f"{media_type}_generation" if media_type != "audio" else "tts_generation"
        scene_id: Optional[str] = data.get("scene_id")
        media_id = await self._media_record(job, media_type)

        async with self.store.session() as s:
            await s.update_media(media_id, {"status": "processing", "error_message": None, "updated_at": utc_now()})
            if scene_id:
                await s.update_scene(scene_id, {"status": "processing", "error_message": None})

        estimate = estimate_job_credits(operation_type, data)
        start_time = time.time()
        try:
            async with billed_operation(
                self.ledger, self.queue, job, data["user_id"], data.get("project_id"), estimate, operation_type
            ) as hold:
                await self.queue.update_progress(job, 10)
                result = await self.generate(data, media_type)
                await self.queue.update_progress(job, 60)

                content = result.content if result.content is not None else await download_bytes(result.url)
                key = storage_key(data["user_id"], media_id, EXTENSIONS.get(result.mime_type, "bin"))
                url = await self.storage.upload_file_with_retry(key, content, result.mime_type)
                await self.queue.update_progress(job, 80)

                credits = self.actual_credits(result.cost_usd, estimate)
                async with self.store.session() as s:
                    await s.update_media(media_id, {
                        "status": "completed",
                        "url": url,
                        "storage_key": key,
                        "mime_type": result.mime_type,
                        "file_size": len(content),
                        "width": result.width,
                        "height": result.height,
                        "model": result.model,
                        "generation_time_ms": int((time.time() - start_time) * 1000),
                        "credits_used": credits,
                        "updated_at": utc_now(),
                    })
                    if scene_id:
                        await s.update_scene(scene_id, {
                            SCENE_URL_FIELDS[media_type]: url,
                            "status": data.get("scene_status") or f"{media_type}_generated",
                        })
                hold.charge(credits, provider=result.provider, model=result.model, media_id=media_id)
        except Exception as e:
            await self._record_failure(job, media_id, scene_id, e)
            raise

        await self.queue.update_progress(job, 100)
        logger.info(
            "Media generated",
            extra={"media_id": media_id, "media_type": media_type, "scene_id": scene_id, "url": url}
        )
        return {"media_id": media_id, "url": url}

    async def _record_failure(self, job: QueueJob, media_id: str, scene_id: Optional[str], error: Exception) -> None:
        if will_retry(job, error):
            logger.warning(
                "Media generation attempt failed, will retry",
                extra={"media_id": media_id, "attempt": job.attempt_number, "error": str(error)}
            )
            async with self.store.session() as s:
                await s.update_media(media_id, {"status": "pending", "updated_at": utc_now()})
            return
        logger.error(
            "Media generation failed",
            exc_info=error,
            extra={"media_id": media_id, "scene_id": scene_id, "attempt": job.attempt_number}
        )
        async with self.store.session() as s:
            await s.update_media(media_id, {"status": "failed", "error_message": str(error), "updated_at": utc_now()})
            if scene_id:
                await s.update_scene(scene_id, {"status": "failed", "error_message": str(error)})


class MediaWorker(SceneMediaWorker):
    """generate-image / generate-video on the media queue."""

    def __init__(self, *args, media: MediaProvider, **kwargs):
        super().__init__(*args, **kwargs)
        self.media = media

    def media_type_for(self, data: Dict[str, Any]) -> str:
        media_type = data.get("media_type")
        if media_type not in ("image", "video"):
            raise ValidationError(f"Unsupported media type: {media_type}")
        return media_type

    async def generate(self, data: Dict[str, Any], media_type: str) -> MediaResult:
        if media_type == "image":
            return await self.media.generate_image(
                data["prompt"],
                aspect_ratio=data.get("aspect_ratio", "16:9"),
                model=data.get("model"),
            )
        return await self.media.generate_video(
            data["prompt"],
            reference_image_url=data.get("reference_image_url"),
            aspect_ratio=data.get("aspect_ratio", "16:9"),
            duration_seconds=int(data.get("duration_seconds") or 5),
            model=data.get("model"),
        )
