"""
Reply pipeline: utterance text -> reply text -> synthesized audio.

Collaborator failures never escape. A failed generation becomes an apology;
a failed synthesis returns `audio=None` so the caller can use spoken-text
playback instead.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from src.callbridge.llm import DeepSeekLLM, apology_for
from src.callbridge.segmenter import Utterance
from src.callbridge.tts import SarvamTTS, SynthesizedAudio

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReplyOutcome:
    reply: str
    language: str
    audio: Optional[SynthesizedAudio] = None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None and bool(self.audio.pcm)


class ReplyPipeline:
    def __init__(self, llm: DeepSeekLLM, tts: SarvamTTS):
        self.llm = llm
        self.tts = tts

    async def generate(self, text: str, language: str) -> str:
        try:
            reply = await self.llm.generate(text, language)
        except Exception as e:
            logger.error("Reply generation raised", error=str(e))
            return apology_for(language)
        return reply or apology_for(language)

    async def run(self, utterance: Utterance, language: str) -> ReplyOutcome:
        reply = await self.generate(utterance.transcript, language)

        try:
            audio = await self.tts.synthesize(reply, language)
        except Exception as e:
            logger.error("Synthesis raised", error=str(e))
            audio = None

        if audio is not None and not audio.pcm:
            audio = None

        return ReplyOutcome(reply=reply, language=language, audio=audio)
