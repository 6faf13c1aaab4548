"""
OpenAI adapters: JSON chat completions for story/scene writing and TTS.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Optional

from openai import APIError, APITimeoutError, AsyncOpenAI, RateLimitError

from shared.config import Settings
from shared.errors import ConfigError, GenerationError, ProviderError
from shared.errors import RateLimitError as ProviderRateLimitError
from shared.logging import get_logger, get_job_id
from modules.generation.providers import LLMResult, SpeechResult

logger = get_logger("generation.openai")

# USD per 1k tokens (input, output)
LLM_PRICING = {
    "gpt-4o": (Decimal("0.005"), Decimal("0.015")),
    "gpt-4o-mini": (Decimal("0.00015"), Decimal("0.0006")),
}
# USD per 1k characters
TTS_PRICING = {
    "tts-1": Decimal("0.015"),
    "tts-1-hd": Decimal("0.030"),
}


def _calculate_llm_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    input_rate, output_rate = LLM_PRICING.get(model, LLM_PRICING["gpt-4o"])
    return (Decimal(input_tokens) / 1000 * input_rate) + (Decimal(output_tokens) / 1000 * output_rate)


def _calculate_tts_cost(model: str, characters: int) -> Decimal:
    return Decimal(characters) / 1000 * TTS_PRICING.get(model, TTS_PRICING["tts-1"])


class OpenAIProvider:
    """LLMProvider and SpeechProvider backed by the OpenAI API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        tts_model: str = "tts-1",
        tts_voice: str = "alloy",
        timeout: float = 90.0,
    ):
        if not api_key:
            raise ConfigError("OPENAI_API_KEY is required for the OpenAI provider")
        self.api_key = api_key
        self.model = model
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["OpenAIProvider"]:
        if not settings.openai_api_key:
            return None
        return cls(
            settings.openai_api_key,
            model=settings.llm_model,
            tts_model=settings.tts_model,
            tts_voice=settings.tts_voice,
        )

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 4000,
    ) -> LLMResult:
        """
        Run a chat completion in JSON mode and parse the result.

        Raises:
            ProviderError: Rate limit, timeout or API failure (retryable)
            GenerationError: Empty, truncated or unparseable response
        """
        model = model or self.model
        try:
            response = await self._get_client().chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.7,
                max_tokens=max_tokens,
                timeout=self.timeout,
            )
        except RateLimitError as e:
            raise ProviderRateLimitError(f"OpenAI rate limit: {str(e)}", job_id=get_job_id()) from e
        except (APITimeoutError, APIError) as e:
            raise ProviderError(f"OpenAI request failed: {str(e)}", provider="openai", job_id=get_job_id()) from e

        choice = response.choices[0]
        content = choice.message.content
        if not content:
            raise GenerationError("LLM returned empty response", job_id=get_job_id())
        if choice.finish_reason == "length":
            raise GenerationError(f"LLM response truncated at max_tokens={max_tokens}", job_id=get_job_id())
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise GenerationError(f"Failed to parse LLM JSON response: {str(e)}", job_id=get_job_id()) from e
        if not isinstance(data, dict):
            raise GenerationError("LLM JSON response is not an object", job_id=get_job_id())

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        cost = _calculate_llm_cost(model, input_tokens, output_tokens)
        logger.info(
            "LLM completion finished",
            extra={"model": model, "input_tokens": input_tokens, "output_tokens": output_tokens, "cost": float(cost)}
        )
        return LLMResult(
            data=data,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
        )

    async def synthesize(self, text: str, voice: Optional[str] = None) -> SpeechResult:
        """
        Synthesize narration to MP3.

        Raises:
            GenerationError: Empty input text
            ProviderError: API failure (retryable)
        """
        if not text or not text.strip():
            raise GenerationError("Cannot synthesize empty narration", job_id=get_job_id())
        voice = voice or self.tts_voice
        try:
            response = await self._get_client().audio.speech.create(
                model=self.tts_model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
        except RateLimitError as e:
            raise ProviderRateLimitError(f"OpenAI rate limit: {str(e)}", job_id=get_job_id()) from e
        except (APITimeoutError, APIError) as e:
            raise ProviderError(f"OpenAI TTS failed: {str(e)}", provider="openai", job_id=get_job_id()) from e

        audio = response.content
        cost = _calculate_tts_cost(self.tts_model, len(text))
        logger.info(
            "Speech synthesized",
            extra={"model": self.tts_model, "voice": voice, "characters": len(text), "bytes": len(audio)}
        )
        return SpeechResult(
            audio=audio,
            model=self.tts_model,
            voice=voice,
            characters=len(text),
            cost_usd=cost,
        )
