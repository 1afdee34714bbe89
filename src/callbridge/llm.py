"""
DeepSeek reply generator over the OpenAI-compatible API.

One short sentence per turn, in the caller's language. There is no
conversation history: each utterance is answered on its own. Any failure
(missing key, timeout, API error, empty output) yields a fixed apology in the
target language so the call can continue.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.callbridge.config import get_config

logger = structlog.get_logger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"

LANGUAGE_NAMES = {
    "en-IN": "English",
    "hi-IN": "Hindi",
    "gu-IN": "Gujarati",
    "bn-IN": "Bengali",
    "kn-IN": "Kannada",
    "ml-IN": "Malayalam",
    "mr-IN": "Marathi",
    "od-IN": "Odia",
    "pa-IN": "Punjabi",
    "ta-IN": "Tamil",
    "te-IN": "Telugu",
}

APOLOGIES = {
    "gu-IN": "માફ કરશો, કૃપા કરીને ફરી પૂછો.",
    "hi-IN": "माफ करें, कृपया फिर पूछें।",
    "en-IN": "Sorry, please ask again.",
}

_PICTOGRAPHIC_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # emoji, pictographs, symbols
    "\U00002600-\U000027BF"  # misc symbols, dingbats
    "\U00002B00-\U00002BFF"  # arrows, stars
    "\U0000FE00-\U0000FE0F"  # variation selectors
    "\U0000200D"  # zero width joiner
    "\U000020E3"  # keycap
    "\ud800-\udfff"  # lone surrogates
    "]+"
)
_REPEATED_PUNCT_RE = re.compile(r"([!?.,])\1+")
_ELLIPSIS = "..."


def apology_for(language: Optional[str]) -> str:
    """Fixed apology for a failed turn. English for languages without one."""
    return APOLOGIES.get(language or "", APOLOGIES["en-IN"])


def sanitize_reply(text: str, max_chars: int = 200) -> str:
    """
    Make generator output safe to speak.

    - strips emoji and other pictographic symbols
    - collapses repeated punctuation ("!!!" -> "!")
    - truncates to at most `max_chars`, marking the cut with "..."
    """
    if not text:
        return ""
    cleaned = _PICTOGRAPHIC_RE.sub("", text)
    cleaned = _REPEATED_PUNCT_RE.sub(r"\1", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if max_chars > 0 and len(cleaned) > max_chars:
        if max_chars <= len(_ELLIPSIS):
            return cleaned[:max_chars]
        cleaned = cleaned[:max_chars - len(_ELLIPSIS)].rstrip() + _ELLIPSIS
    return cleaned


def get_system_prompt(language: str) -> str:
    label = LANGUAGE_NAMES.get(language, language)
    return (
        "You are an AI assistant on a phone call. "
        f"The caller speaks {label} ({language}). "
        f"Reply ONLY in {label}. "
        "Keep it short: one sentence, fewer than 20 words. "
        "No emoji, no lists, no markdown."
    )


@dataclass
class LLMResponse:
    """Response from the generator."""
    text: str
    total_ms: float = 0.0


class DeepSeekLLM:
    """DeepSeek chat client. `generate()` never raises."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.deepseek_model
        self._client = client
        if self._client is None and config.deepseek_api_key:
            self._client = AsyncOpenAI(
                api_key=config.deepseek_api_key,
                base_url=DEEPSEEK_BASE_URL,
            )

    async def generate(self, text: str, language: str) -> str:
        return (await self.generate_response(text, language)).text

    async def generate_response(self, text: str, language: str) -> LLMResponse:
        start_time = time.time()

        if self._client is None:
            logger.warning("DeepSeek key missing, returning apology")
            return LLMResponse(text=apology_for(language))

        messages = [
            {"role": "system", "content": get_system_prompt(language)},
            {"role": "user", "content": text},
        ]

        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=self.config.llm_max_tokens,
                    temperature=self.config.llm_temperature,
                ),
                timeout=self.config.llm_timeout_seconds,
            )
            content = ""
            if completion.choices:
                content = completion.choices[0].message.content or ""
        except asyncio.TimeoutError:
            logger.error("LLM generation timed out", timeout_s=self.config.llm_timeout_seconds)
            return LLMResponse(text=apology_for(language), total_ms=(time.time() - start_time) * 1000)
        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            return LLMResponse(text=apology_for(language), total_ms=(time.time() - start_time) * 1000)

        reply = sanitize_reply(content, self.config.reply_max_chars)
        total_ms = (time.time() - start_time) * 1000
        if not reply:
            logger.warning("LLM returned empty output", language=language)
            return LLMResponse(text=apology_for(language), total_ms=total_ms)

        logger.info("LLM reply", language=language, chars=len(reply), total_ms=round(total_ms))
        return LLMResponse(text=reply, total_ms=total_ms)
