"""
Payment provider webhooks.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from shared.logging import get_logger
from api_gateway.context import AppContext
from api_gateway.dependencies import get_context

logger = get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(default=""),
    context: AppContext = Depends(get_context),
):
    """Always 200 once the signature verifies, so Razorpay stops redelivering."""
    if context.webhooks is None:
        logger.warning("Webhook received while payments are disabled")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payments are disabled")
    raw_body = await request.body()
    return await context.webhooks.handle(raw_body, x_razorpay_signature)
