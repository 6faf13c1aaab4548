"""
Payment endpoints.

Credit pack order creation.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from api_gateway.context import AppContext
from api_gateway.dependencies import get_context, get_current_user
from modules.payments import CREDIT_PACKS

router = APIRouter()


class CreateOrderRequest(BaseModel):
    credits: int = Field(gt=0)
    idempotency_key: str = Field(min_length=8, max_length=128)


@router.get("/payments/packs")
async def list_packs():
    return {"packs": [{"credits": credits, "amount": str(amount)} for credits, amount in CREDIT_PACKS.items()]}


@router.post("/payments/orders", status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CreateOrderRequest,
    current_user: dict = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    if context.payments is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are disabled")
    return await context.payments.create_order(current_user["user_id"], body.credits, body.idempotency_key)

