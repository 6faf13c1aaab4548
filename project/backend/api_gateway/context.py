"""
Application context.

Every long-lived collaborator is built once at process start and handed to
routes and workers explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from shared.config import Settings
from shared.logging import get_logger
from shared.redis_client import RedisClient
from shared.storage import StorageClient
from shared.store import Store, create_store
from api_gateway.services.queue_service import QueueService
from modules.credit_ledger import CreditLedger
from modules.generation.openai_provider import OpenAIProvider
from modules.generation.providers import LLMProvider, MediaProvider, PaymentGateway, SpeechProvider, StorageUploader
from modules.generation.replicate_provider import ReplicateProvider
from modules.payments import PaymentService, PaymentWebhookHandler, RazorpayGateway
from modules.pipeline import PipelineOrchestrator, TemplateRegistry, create_default_registry
from modules.stage_handlers import create_stage_registry

logger = get_logger("context")


@dataclass
class AppContext:
    settings: Settings
    store: Store
    queue: QueueService
    ledger: CreditLedger
    templates: TemplateRegistry
    orchestrator: PipelineOrchestrator
    storage: Optional[StorageUploader] = None
    llm: Optional[LLMProvider] = None
    media: Optional[MediaProvider] = None
    speech: Optional[SpeechProvider] = None
    payments: Optional[PaymentService] = None
    webhooks: Optional[PaymentWebhookHandler] = None
    redis: Optional[RedisClient] = None

    async def close(self) -> None:
        await self.store.close()
        if self.redis is not None:
            await self.redis.close()
        logger.info("Application context closed")


async def build_context(
    settings: Settings,
    store: Optional[Store] = None,
    queue: Optional[QueueService] = None,
    storage: Optional[StorageUploader] = None,
    llm: Optional[LLMProvider] = None,
    media: Optional[MediaProvider] = None,
    speech: Optional[SpeechProvider] = None,
    gateway: Optional[PaymentGateway] = None,
) -> AppContext:
    """
    Wire the context from settings. Explicit arguments replace the
    collaborators settings would build.
    """
    store = store or create_store(settings)
    await store.connect()

    redis_client = None
    if queue is None:
        redis_client = RedisClient(settings.redis_url, settings.queue_key_prefix)
        queue = QueueService(redis_client)

    openai_provider = OpenAIProvider.from_settings(settings) if llm is None or speech is None else None
    storage = storage or StorageClient.from_settings(settings)
    llm = llm or openai_provider
    speech = speech or openai_provider
    media = media or ReplicateProvider.from_settings(settings)
    gateway = gateway or RazorpayGateway.from_settings(settings)

    ledger = CreditLedger.from_settings(store, settings)
    templates = create_default_registry()
    orchestrator = PipelineOrchestrator(store, queue, templates, create_stage_registry(store))

    payments = PaymentService(store, gateway) if gateway is not None else None
    webhooks = (
        PaymentWebhookHandler(store, ledger, settings.razorpay_webhook_secret)
        if settings.payment_enabled and settings.razorpay_webhook_secret else None
    )

    logger.info(
        "Application context built",
        extra={
            "store_backend": settings.store_backend,
            "storage": storage is not None,
            "llm": llm is not None,
            "media": media is not None,
            "payments": payments is not None,
        }
    )
    return AppContext(
        settings=settings,
        store=store,
        queue=queue,
        ledger=ledger,
        templates=templates,
        orchestrator=orchestrator,
        storage=storage,
        llm=llm,
        media=media,
        speech=speech,
        payments=payments,
        webhooks=webhooks,
        redis=redis_client,
    )
