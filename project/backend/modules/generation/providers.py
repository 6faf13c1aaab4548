"""
Provider collaborator interfaces.

Workers depend on these protocols only; concrete adapters live in
openai_provider.py, replicate_provider.py and shared/storage.py.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol


@dataclass
class LLMResult:
    """Parsed JSON completion plus usage."""

    data: Dict[str, Any]
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: Optional[Decimal] = None


@dataclass
class MediaResult:
    """Image or video output. Either `content` or `url` is set."""

    media_type: str
    mime_type: str
    model: str
    content: Optional[bytes] = None
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    cost_usd: Optional[Decimal] = None
    provider: str = "replicate"


@dataclass
class SpeechResult:
    audio: bytes
    model: str
    voice: str
    mime_type: str = "audio/mpeg"
    characters: int = 0
    cost_usd: Optional[Decimal] = None


@dataclass
class GatewayOrder:
    external_order_id: str
    amount: Decimal
    currency: str
    raw: Dict[str, Any] = field(default_factory=dict)


class LLMProvider(Protocol):
    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 4000,
    ) -> LLMResult: ...


class MediaProvider(Protocol):
    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
    ) -> MediaResult: ...

    async def generate_video(
        self,
        prompt: str,
        reference_image_url: Optional[str] = None,
        aspect_ratio: str = "16:9",
        duration_seconds: int = 5,
        model: Optional[str] = None,
    ) -> MediaResult: ...

    async def edit_image(
        self,
        image_url: str,
        prompt: str,
        model: Optional[str] = None,
    ) -> MediaResult: ...


class SpeechProvider(Protocol):
    async def synthesize(self, text: str, voice: Optional[str] = None) -> SpeechResult: ...


class StorageUploader(Protocol):
    async def upload_file_with_retry(self, key: str, data: bytes, mime_type: Optional[str] = None) -> str: ...


class PaymentGateway(Protocol):
    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder: ...

    @property
    def client_key(self) -> str: ...
