"""
Narration synthesis processor for the TTS queue.
"""

from typing import Any, Dict

from modules.generation.media_worker import SceneMediaWorker
from modules.generation.providers import MediaResult, SpeechProvider


class TTSWorker(SceneMediaWorker):
    """synthesize-narration: scene narration -> MP3."""

    provider_name = "openai"
    prompt_field = "text"

    def __init__(self, *args, speech: SpeechProvider, **kwargs):
        super().__init__(*args, **kwargs)
        self.speech = speech

    def media_type_for(self, data: Dict[str, Any]) -> str:
        return "audio"

    async def generate(self, data: Dict[str, Any], media_type: str) -> MediaResult:
        result = await self.speech.synthesize(data["text"], voice=data.get("voice"))
        return MediaResult(
            media_type="audio",
            mime_type=result.mime_type,
            model=result.model,
            content=result.audio,
            cost_usd=result.cost_usd,
            provider=self.provider_name,
        )
