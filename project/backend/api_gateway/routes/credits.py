"""
Credit endpoints.

Balance, ledger history, low balance threshold and run cost estimates.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api_gateway.context import AppContext
from api_gateway.dependencies import get_context, get_current_user
from modules.generation.cost_estimator import estimate_pipeline_credits
from modules.pipeline.templates import deep_merge

router = APIRouter()


class ThresholdRequest(BaseModel):
    threshold: Optional[int] = Field(default=None, ge=0)


class EstimateRequest(BaseModel):
    template_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


@router.get("/credits/balance")
async def get_balance(
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    return await context.ledger.get_balance_summary(current_user["user_id"])


@router.get("/credits/transactions")
async def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    transactions = await context.ledger.list_transactions(current_user["user_id"], limit=limit)
    return {"transactions": [txn.model_dump(mode="json") for txn in transactions]}


@router.put("/credits/low-balance-threshold")
async def set_low_balance_threshold(
    body: ThresholdRequest,
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    await context.ledger.set_low_balance_threshold(current_user["user_id"], body.threshold)
    return {"threshold": body.threshold}


@router.post("/credits/estimate")
async def estimate_run(
    body: EstimateRequest,
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """Credits a run would reserve with the given project config."""
    template = context.templates.resolve(body.template_id)
    config = deep_merge(template.default_config, body.config)
    estimate = estimate_pipeline_credits(int(config.get("scene_count", 5)), config)
    available = await context.ledger.get_available_balance(current_user["user_id"])
    return {**estimate, "available": available, "sufficient": available >= estimate["total_credits"]}
