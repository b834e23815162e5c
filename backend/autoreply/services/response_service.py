# /autoreply/services/response_service.py

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from autoreply.config import strings
from autoreply.config.persona import (
    AUTO_REPLY_PROMPT_TEMPLATE,
    EMOJI_GUIDANCE_OFF,
    EMOJI_GUIDANCE_ON,
    EMOJI_TRIGGERS,
    SELF_DISCLOSURE_PHRASES,
    TONE_GUIDANCE,
)
from autoreply.config.settings import settings
from autoreply.models.config import KnowledgeBase, ResponseSettings
from autoreply.models.domain import GeneratedReply, GenerationOptions
from autoreply.services.ai_service import ai_service
from autoreply.utils.errors import GenerationFailed

# Builds the generation prompt from a knowledge base and shapes the raw model
# output into a sendable reply.

logger = logging.getLogger(__name__)

# Longest phrases first so "As an AI language model" is removed whole. Phrases
# only match as whole words, so "Mei cannot" is left alone.
_SELF_DISCLOSURE_RE = re.compile(
    r"\b(?:"
    + "|".join(re.escape(phrase) for phrase in sorted(SELF_DISCLOSURE_PHRASES, key=len, reverse=True))
    + r")\b",
    re.IGNORECASE,
)
_SPACE_RUN_RE = re.compile(r"[ \t]{2,}")


def strip_self_disclosure(text: str) -> str:
    return _SELF_DISCLOSURE_RE.sub("", text)


def insert_emojis(text: str, triggers: Iterable[Tuple[str, str]] = EMOJI_TRIGGERS) -> str:
    """Put each trigger's emoji in front of the first word containing the trigger."""
    for trigger, emoji in triggers:
        if emoji in text:
            continue
        match = re.search(rf"\S*{re.escape(trigger)}", text, re.IGNORECASE)
        if match:
            text = f"{text[:match.start()]}{emoji} {text[match.start():]}"
    return text


def truncate_at_word_boundary(text: str, max_length: int) -> str:
    """
    Shorten text to at most max_length characters, cutting at the last
    whitespace at or before max_length. Returns "" when the first word alone
    is longer than max_length.
    """
    if len(text) <= max_length:
        return text
    head = text[:max_length + 1]
    cut = max((index for index, char in enumerate(head) if char.isspace()), default=-1)
    if cut <= 0:
        return ""
    return text[:cut].rstrip()


def post_process(raw_text: str, response_settings: ResponseSettings) -> str:
    text = strip_self_disclosure(raw_text)
    text = _SPACE_RUN_RE.sub(" ", text)
    if response_settings.include_emojis:
        text = insert_emojis(text)
    text = text.strip()
    return truncate_at_word_boundary(text, response_settings.max_length)


def _join(values: Optional[List[str]], fallback: str) -> str:
    return ", ".join(values) if values else fallback


class ResponseGenerator:
    def __init__(self, ai=None):
        self.ai = ai or ai_service

    def build_prompt(self, kb: KnowledgeBase, message_text: str, sender_name: Optional[str] = None,
                     now: Optional[datetime] = None) -> str:
        info = kb.business_info
        response_settings = kb.response_settings
        now = now or datetime.now(timezone.utc)
        local_time = now.astimezone(ZoneInfo(kb.business_hours.timezone))

        return AUTO_REPLY_PROMPT_TEMPLATE.format(
            system_prompt=kb.system_prompt or strings.DEFAULT_SYSTEM_PROMPT,
            company_name=info.company_name or strings.DEFAULT_COMPANY_NAME,
            services=_join(info.services, "Various services"),
            products=_join(info.products, "Various products"),
            pricing=info.pricing or strings.DEFAULT_PRICING,
            contact_info=info.contact_info or "Available on request",
            website=info.website or "Not provided",
            max_length=response_settings.max_length,
            tone=response_settings.tone.value,
            tone_guidance=TONE_GUIDANCE[response_settings.tone.value],
            emoji_guidance=EMOJI_GUIDANCE_ON if response_settings.include_emojis else EMOJI_GUIDANCE_OFF,
            message=(message_text or "")[:settings.max_customer_message_chars],
            sender_name=sender_name or strings.DEFAULT_SENDER_NAME,
            current_time=local_time.strftime("%A %Y-%m-%d %H:%M"),
        )

    def generation_options(self, kb: KnowledgeBase) -> GenerationOptions:
        return GenerationOptions(
            temperature=settings.ai_temperature,
            max_tokens=kb.response_settings.max_length,
            stop_sequences=list(settings.ai_stop_sequences),
        )

    async def generate(self, kb: KnowledgeBase, message_text: str, sender_name: Optional[str] = None,
                       now: Optional[datetime] = None) -> GeneratedReply:
        """
        Produce a post-processed reply. Raises GenerationFailed when the
        collaborator errors, exceeds the timeout, or yields nothing usable.
        """
        prompt = self.build_prompt(kb, message_text, sender_name, now)
        try:
            raw_text = await asyncio.wait_for(
                self.ai.generate(prompt, self.generation_options(kb)),
                timeout=settings.ai_generation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Generation timed out after {settings.ai_generation_timeout_seconds}s (kb {kb.id})")
            raise GenerationFailed("Text generation timed out", kb.id) from None
        except GenerationFailed as e:
            raise GenerationFailed(e.reason, kb.id) from e
        except Exception as e:
            logger.error(f"Text generation raised {type(e).__name__}: {e}")
            raise GenerationFailed(f"Text generation error: {e}", kb.id) from e

        if not raw_text or not raw_text.strip():
            raise GenerationFailed("Text generation returned an empty response", kb.id)

        text = post_process(raw_text, kb.response_settings)
        if not text:
            logger.warning(f"Generated reply was unusable after post-processing (kb {kb.id}): {raw_text!r}")
            raise GenerationFailed("Generated reply was empty after post-processing", kb.id)

        return GeneratedReply(text=text, raw_text=raw_text, prompt=prompt)


response_generator = ResponseGenerator()
