"""
Billing-aware generation workers.

Each processor reserves credits, calls a provider, uploads the output and
settles the reservation with the actual cost.
"""

from typing import Dict, Optional

from shared.errors import ConfigError
from shared.store import Store
from api_gateway.services.queue_service import QueueService
from modules.credit_ledger import CreditLedger
from modules.generation.assembly_worker import AssemblyWorker
from modules.generation.base import GenerationWorker
from modules.generation.media_worker import MediaWorker
from modules.generation.providers import LLMProvider, MediaProvider, SpeechProvider, StorageUploader
from modules.generation.script_workers import SceneWorker, StoryWorker
from modules.generation.tts_worker import TTSWorker
from modules.pipeline.templates import ASSEMBLY_QUEUE, MEDIA_QUEUE, SCENE_QUEUE, STORY_QUEUE, TTS_QUEUE


def create_generation_workers(
    store: Store,
    ledger: CreditLedger,
    queue: QueueService,
    llm: Optional[LLMProvider],
    media: Optional[MediaProvider],
    speech: Optional[SpeechProvider],
    storage: Optional[StorageUploader],
    credits_per_usd: int = 100,
) -> Dict[str, GenerationWorker]:
    """
    Processors keyed by queue name.

    Raises:
        ConfigError: If a collaborator a queue needs is not configured
    """
    missing = [name for name, value in (("llm", llm), ("media", media), ("speech", speech), ("storage", storage)) if value is None]
    if missing:
        raise ConfigError(f"Generation workers need providers that are not configured: {', '.join(missing)}")
    common = dict(store=store, ledger=ledger, queue=queue, credits_per_usd=credits_per_usd)
    return {
        STORY_QUEUE: StoryWorker(llm=llm, **common),
        SCENE_QUEUE: SceneWorker(llm=llm, **common),
        MEDIA_QUEUE: MediaWorker(media=media, storage=storage, **common),
        TTS_QUEUE: TTSWorker(speech=speech, storage=storage, **common),
        ASSEMBLY_QUEUE: AssemblyWorker(storage=storage, **common),
    }


__all__ = [
    "AssemblyWorker",
    "GenerationWorker",
    "MediaWorker",
    "SceneWorker",
    "StoryWorker",
    "TTSWorker",
    "create_generation_workers",
]
