# /autoreply/services/ai_service.py

import asyncio
import logging
from typing import Optional

from google import genai
from google.genai.types import GenerateContentConfig, HttpOptions
from openai import AsyncOpenAI

from autoreply.config.settings import settings
from autoreply.models.domain import GenerationOptions
from autoreply.utils.circuit_breaker import CircuitBreaker
from autoreply.utils.errors import GenerationFailed
from autoreply.utils.metrics import ai_requests_counter

# The text-generation collaborator: prompt in, text out. Gemini is tried
# first with OpenAI as the fallback; if neither produces text the call
# raises GenerationFailed rather than returning a canned reply.

logger = logging.getLogger(__name__)

# OpenAI accepts at most four stop sequences.
OPENAI_MAX_STOP_SEQUENCES = 4


class AIService:
    def __init__(self, gemini_client=None, openai_client=None):
        if gemini_client is not None:
            self.gemini_client = gemini_client
        elif settings.gemini_api_key:
            http_options = HttpOptions(api_version='v1')
            self.gemini_client = genai.Client(api_key=settings.gemini_api_key, http_options=http_options)
        else:
            self.gemini_client = None
        self.model_name = settings.gemini_model

        if openai_client is not None:
            self.openai_client = openai_client
        elif settings.openai_api_key:
            self.openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
        else:
            self.openai_client = None
        self.openai_model = settings.openai_model

        self.gemini_breaker = CircuitBreaker(name="gemini")
        self.openai_breaker = CircuitBreaker(name="openai")

    @property
    def available(self) -> bool:
        return bool(self.gemini_client or self.openai_client)

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        """Generate text for prompt, failing over from Gemini to OpenAI."""
        if not self.available:
            raise GenerationFailed("No text-generation provider is configured")

        if self.gemini_client:
            try:
                text = await self.gemini_breaker.call(self._generate_gemini, prompt, options)
                if text:
                    ai_requests_counter.labels(model="gemini", status="success").inc()
                    return text
                logger.warning("Gemini returned an empty response")
                ai_requests_counter.labels(model="gemini", status="empty").inc()
            except Exception as e:
                logger.error(f"Gemini API call failed: {e}")
                ai_requests_counter.labels(model="gemini", status="error").inc()

        if self.openai_client:
            try:
                text = await self.openai_breaker.call(self._generate_openai, prompt, options)
                if text:
                    ai_requests_counter.labels(model="openai", status="success").inc()
                    return text
                logger.warning("OpenAI returned an empty response")
                ai_requests_counter.labels(model="openai", status="empty").inc()
            except Exception as e:
                logger.error(f"OpenAI fallback failed: {e}")
                ai_requests_counter.labels(model="openai", status="error").inc()

        raise GenerationFailed("All text-generation providers failed or returned nothing")

    async def _generate_gemini(self, prompt: str, options: GenerationOptions) -> Optional[str]:
        response = await asyncio.to_thread(
            self.gemini_client.models.generate_content,
            model=self.model_name,
            contents=prompt,
            config=GenerateContentConfig(
                temperature=options.temperature,
                max_output_tokens=options.max_tokens,
                stop_sequences=options.stop_sequences or None,
            ),
        )
        return (response.text or "").strip()

    async def _generate_openai(self, prompt: str, options: GenerationOptions) -> Optional[str]:
        response = await self.openai_client.chat.completions.create(
            model=self.openai_model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            stop=options.stop_sequences[:OPENAI_MAX_STOP_SEQUENCES] or None,
        )
        if not response.choices:
            return None
        return (response.choices[0].message.content or "").strip()


ai_service = AIService()
