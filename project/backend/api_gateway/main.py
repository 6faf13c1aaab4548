"""
FastAPI application.

Builds the AppContext in the lifespan and maps domain errors to HTTP status
codes.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from shared.config import settings
from shared.errors import (
    InsufficientCreditsError,
    NotFoundError,
    OrderNotFoundError,
    PaymentError,
    PipelineError,
    ReservationNotFoundError,
    RetryableError,
    TemplateError,
    ValidationError,
    WebhookSignatureError,
)
from shared.logging import get_logger
from api_gateway.context import AppContext, build_context
from api_gateway.routes import credits, payments, pipeline, webhooks

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


def _error_body(e: PipelineError) -> dict:
    return {"error": e.message, "code": e.code}


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the API app. A prebuilt context is used as is and left open on
    shutdown; otherwise one is built from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = context is None
        app.state.context = context or await build_context(settings)
        logger.info("API started", extra={"environment": settings.environment})
        try:
            yield
        finally:
            if owned:
                await app.state.context.close()

    app = FastAPI(title="ContentForge API", version="0.1.0", lifespan=lifespan)
    if context is not None:
        app.state.context = context

    @app.exception_handler(InsufficientCreditsError)
    async def insufficient_credits_handler(request: Request, e: InsufficientCreditsError):
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={**_error_body(e), "required": e.required, "available": e.available},
        )

    @app.exception_handler(WebhookSignatureError)
    async def webhook_signature_handler(request: Request, e: WebhookSignatureError):
        logger.warning("Rejected webhook", extra={"error": e.message})
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(e))

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, e: PipelineError):
        if isinstance(e, (NotFoundError, OrderNotFoundError, ReservationNotFoundError)):
            code = status.HTTP_404_NOT_FOUND
        elif isinstance(e, (ValidationError, TemplateError, PaymentError)):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(e, RetryableError):
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        if code >= 500:
            logger.error("Request failed", exc_info=e, extra={"path": request.url.path})
        return JSONResponse(status_code=code, content=_error_body(e))

    @app.get("/health")
    async def health(request: Request):
        ctx: AppContext = request.app.state.context
        store_ok = await ctx.store.health_check()
        redis_ok = await ctx.redis.ping() if ctx.redis is not None else True
        healthy = store_ok and redis_ok
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "healthy" if healthy else "degraded", "store": store_ok, "redis": redis_ok},
        )

    for module in (pipeline, credits, payments, webhooks):
        app.include_router(module.router, prefix=API_PREFIX)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_gateway.main:app", host="0.0.0.0", port=8000)
