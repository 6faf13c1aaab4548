"""
Replicate adapter for image and video generation.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import replicate
from replicate.exceptions import ModelError, ReplicateError

from shared.config import Settings
from shared.errors import ConfigError, GenerationError, ProviderError, RateLimitError
from shared.logging import get_job_id, get_logger
from modules.generation.providers import MediaResult

logger = get_logger("generation.replicate")

# Fallback USD cost when the prediction does not report one
DEFAULT_IMAGE_COST = Decimal("0.003")
DEFAULT_VIDEO_COST_PER_SECOND = Decimal("0.05")

ASPECT_DIMENSIONS = {
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "1:1": (1024, 1024),
    "4:3": (1024, 768),
}


def get_prediction_cost(prediction) -> Optional[Decimal]:
    """Actual cost reported on a Replicate prediction, if any."""
    cost = None
    metrics = getattr(prediction, "metrics", None)
    if isinstance(metrics, dict):
        cost = metrics.get("cost")
    if cost is None:
        cost = getattr(prediction, "cost", None)
    if cost is None:
        return None
    try:
        return Decimal(str(cost))
    except ArithmeticError:
        logger.warning(f"Invalid cost value from prediction: {cost}")
        return None


def extract_output_url(output: Any) -> str:
    """Predictions return a URL, a FileOutput, or a list of either."""
    if isinstance(output, list):
        output = output[0] if output else None
    if not output:
        raise GenerationError("No output returned from Replicate", job_id=get_job_id())
    url = output.url if hasattr(output, "url") else str(output)
    if not url:
        raise GenerationError("No output URL returned from Replicate", job_id=get_job_id())
    return str(url)


class ReplicateProvider:
    """MediaProvider backed by Replicate predictions."""

    def __init__(
        self,
        api_token: str,
        image_model: str = "black-forest-labs/flux-schnell",
        video_model: str = "kwaivgi/kling-v2.1",
        edit_model: str = "black-forest-labs/flux-kontext-pro",
        poll_interval: float = 3.0,
        timeout_seconds: float = 600.0,
    ):
        if not api_token:
            raise ConfigError("REPLICATE_API_TOKEN is required for the Replicate provider")
        self.client = replicate.Client(api_token=api_token)
        self.image_model = image_model
        self.video_model = video_model
        self.edit_model = edit_model
        self.poll_interval = poll_interval
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["ReplicateProvider"]:
        if not settings.replicate_api_token:
            return None
        return cls(
            settings.replicate_api_token,
            image_model=settings.image_model,
            video_model=settings.video_model,
        )

    async def _predict(self, model: str, input_data: Dict[str, Any]):
        """Create a prediction and poll it until it finishes."""
        job_id = get_job_id()
        try:
            prediction = await asyncio.to_thread(self.client.predictions.create, model=model, input=input_data)
        except ReplicateError as e:
            if getattr(e, "status", None) == 429:
                raise RateLimitError(f"Replicate rate limit: {str(e)}", job_id=job_id) from e
            raise ProviderError(f"Replicate request failed: {str(e)}", provider="replicate", job_id=job_id) from e
        except ModelError as e:
            raise GenerationError(f"Replicate model error: {str(e)}", job_id=job_id) from e

        logger.info("Replicate prediction created", extra={"model": model, "prediction_id": prediction.id})
        start_time = time.time()
        while prediction.status not in ("succeeded", "failed", "canceled"):
            elapsed = time.time() - start_time
            if elapsed > self.timeout_seconds:
                raise ProviderError(
                    f"Replicate prediction timed out after {elapsed:.1f}s",
                    provider="replicate",
                    job_id=job_id,
                )
            await asyncio.sleep(self.poll_interval)
            await asyncio.to_thread(prediction.reload)

        if prediction.status != "succeeded":
            error = str(prediction.error or prediction.status)
            if "internal" in error.lower() or "timeout" in error.lower():
                raise ProviderError(f"Replicate transient failure: {error}", provider="replicate", job_id=job_id)
            raise GenerationError(f"Replicate prediction failed: {error}", job_id=job_id)

        logger.info(
            "Replicate prediction succeeded",
            extra={"model": model, "prediction_id": prediction.id, "duration": time.time() - start_time}
        )
        return prediction

    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
    ) -> MediaResult:
        model = model or self.image_model
        prediction = await self._predict(model, {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "output_format": "png",
            "num_outputs": 1,
        })
        width, height = ASPECT_DIMENSIONS.get(aspect_ratio, (None, None))
        return MediaResult(
            media_type="image",
            mime_type="image/png",
            model=model,
            url=extract_output_url(prediction.output),
            width=width,
            height=height,
            cost_usd=get_prediction_cost(prediction) or DEFAULT_IMAGE_COST,
        )

    async def generate_video(
        self,
        prompt: str,
        reference_image_url: Optional[str] = None,
        aspect_ratio: str = "16:9",
        duration_seconds: int = 5,
        model: Optional[str] = None,
    ) -> MediaResult:
        model = model or self.video_model
        input_data: Dict[str, Any] = {
            "prompt": prompt,
            "duration": duration_seconds,
            "aspect_ratio": aspect_ratio,
        }
        if reference_image_url:
            input_data["start_image"] = reference_image_url
        prediction = await self._predict(model, input_data)
        width, height = ASPECT_DIMENSIONS.get(aspect_ratio, (None, None))
        return MediaResult(
            media_type="video",
            mime_type="video/mp4",
            model=model,
            url=extract_output_url(prediction.output),
            width=width,
            height=height,
            cost_usd=get_prediction_cost(prediction) or DEFAULT_VIDEO_COST_PER_SECOND * duration_seconds,
        )

    async def edit_image(
        self,
        image_url: str,
        prompt: str,
        model: Optional[str] = None,
    ) -> MediaResult:
        model = model or self.edit_model
        prediction = await self._predict(model, {"prompt": prompt, "input_image": image_url, "output_format": "png"})
        return MediaResult(
            media_type="image",
            mime_type="image/png",
            model=model,
            url=extract_output_url(prediction.output),
            cost_usd=get_prediction_cost(prediction) or DEFAULT_IMAGE_COST,
        )
