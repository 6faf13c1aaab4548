"""
Credit cost estimation.

Estimates are what a worker reserves before calling a provider. The settled
amount comes from the provider-reported USD cost, never above the estimate.
"""

import math
from decimal import Decimal
from typing import Any, Dict, Optional

from shared.logging import get_logger

logger = get_logger("generation.cost_estimator")

CREDIT_COSTS: Dict[str, int] = {
    "story_writing": 5,
    "scene_generation": 5,
    "image_generation": 10,
    "image_edit": 10,
    "video_generation": 50,
    "tts_generation": 3,
    "video_assembly": 2,
}

# Per-model overrides, credits per unit
MODEL_CREDIT_COSTS: Dict[str, Dict[str, int]] = {
    "image_generation": {
        "black-forest-labs/flux-schnell": 5,
        "black-forest-labs/flux-1.1-pro": 15,
    },
    "video_generation": {
        "kwaivgi/kling-v2.1": 50,
        "minimax/video-01": 40,
    },
}

VIDEO_REFERENCE_SECONDS = 5
UNKNOWN_OPERATION_CREDITS = 1


def estimate_operation_credits(operation_type: str, model: Optional[str] = None) -> int:
    """
    Credits to reserve for one unit of `operation_type`.

    Unknown operations cost one credit so an unrecognised name is never free.
    """
    if model:
        model_cost = MODEL_CREDIT_COSTS.get(operation_type, {}).get(model)
        if model_cost is not None:
            return model_cost
    cost = CREDIT_COSTS.get(operation_type)
    if cost is None:
        logger.warning(
            "Unknown operation type, defaulting credit cost",
            extra={"operation_type": operation_type, "credits": UNKNOWN_OPERATION_CREDITS}
        )
        return UNKNOWN_OPERATION_CREDITS
    return cost


def estimate_video_credits(duration_seconds: float, model: Optional[str] = None) -> int:
    """Video cost scales with clip length relative to a 5 second clip."""
    per_clip = estimate_operation_credits("video_generation", model)
    return max(1, math.ceil(per_clip * duration_seconds / VIDEO_REFERENCE_SECONDS))


def estimate_job_credits(operation_type: str, payload: Dict[str, Any]) -> int:
    """Estimate for one queue job from its payload."""
    if operation_type == "video_generation":
        return estimate_video_credits(payload.get("duration_seconds") or VIDEO_REFERENCE_SECONDS, payload.get("model"))
    return estimate_operation_credits(operation_type, payload.get("model"))


def estimate_pipeline_credits(scene_count: int, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Estimate a whole run of the AI video template.

    Returns:
        {"total_credits": int, "breakdown": [{"stage", "credits", "count"}]}
    """
    stages = config.get("stages", {})
    video = stages.get("video", {})
    breakdown = [
        {"stage": "story_writing", "credits": CREDIT_COSTS["story_writing"], "count": 1},
        {"stage": "scene_generation", "credits": CREDIT_COSTS["scene_generation"], "count": 1},
        {
            "stage": "image_generation",
            "credits": estimate_operation_credits("image_generation", stages.get("visuals", {}).get("model")),
            "count": scene_count,
        },
    ]
    if video.get("enabled", True):
        breakdown.append({
            "stage": "video_generation",
            "credits": estimate_video_credits(video.get("clip_seconds", VIDEO_REFERENCE_SECONDS), video.get("model")),
            "count": scene_count,
        })
    if stages.get("tts", {}).get("enabled", True):
        breakdown.append({"stage": "tts_generation", "credits": CREDIT_COSTS["tts_generation"], "count": scene_count})
    breakdown.append({"stage": "video_assembly", "credits": CREDIT_COSTS["video_assembly"], "count": 1})
    return {
        "total_credits": sum(item["credits"] * item["count"] for item in breakdown),
        "breakdown": breakdown,
    }


def credits_from_usd(cost_usd: Optional[Decimal], estimate: int, credits_per_usd: int) -> int:
    """
    Convert a provider-reported USD cost to credits, capped at the estimate.

    No reported cost means the estimate is charged.
    """
    if cost_usd is None:
        return estimate
    actual = math.ceil(Decimal(cost_usd) * credits_per_usd)
    return max(0, min(estimate, actual))
