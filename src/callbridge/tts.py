"""
Sarvam text-to-speech over the REST API.

The service returns one or more base64-encoded WAV files. Their PCM is
concatenated and the embedded sample rate is kept so playback can resample
to the call's 8kHz.
"""

import base64
import binascii
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from src.callbridge.audio import get_audio_duration_ms, read_wav_mono_pcm16
from src.callbridge.config import get_config

logger = structlog.get_logger(__name__)

SARVAM_TTS_URL = "https://api.sarvam.ai/text-to-speech"


@dataclass(frozen=True)
class SynthesizedAudio:
    """Mono PCM16 audio with its sample rate."""
    pcm: bytes
    sample_rate: int

    @property
    def duration_ms(self) -> float:
        return get_audio_duration_ms(self.pcm, self.sample_rate, is_ulaw=False)


class SarvamTTS:
    """Sarvam REST synthesizer. `synthesize()` returns None instead of raising."""

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        if config is None:
            config = get_config()
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=20.0)
        return self._client

    def _build_request(self, text: str, language: str) -> dict:
        return {
            "text": text,
            "target_language_code": language,
            "speaker": self.config.sarvam_tts_voice,
            "pitch": 0,
            "pace": 1,
            "loudness": 1,
            "speech_sample_rate": self.config.tts_sample_rate,
            "enable_preprocessing": True,
            "model": self.config.sarvam_tts_model,
        }

    async def synthesize(self, text: str, language: str) -> Optional[SynthesizedAudio]:
        if not text or not text.strip():
            return None

        start_time = time.time()
        headers = {"api-subscription-key": self.config.sarvam_api_key}
        try:
            response = await self._get_client().post(
                SARVAM_TTS_URL,
                json=self._build_request(text, language),
                headers=headers,
            )
            if response.status_code != 200:
                logger.error(
                    "Sarvam TTS error",
                    status=response.status_code,
                    body=response.text[:200],
                )
                return None
            payload = response.json()
        except Exception as e:
            logger.error("Sarvam TTS failed", error_type=type(e).__name__, error=str(e))
            return None

        audios = payload.get("audios") if isinstance(payload, dict) else None
        if not audios:
            logger.warning("Sarvam TTS returned no audio", language=language)
            return None

        try:
            audio = decode_wav_segments(audios)
        except (ValueError, TypeError, binascii.Error) as e:
            logger.error("Sarvam TTS audio undecodable", error=str(e))
            return None

        if not audio.pcm:
            logger.warning("Sarvam TTS returned empty audio", language=language)
            return None

        logger.info(
            "TTS synthesized",
            language=language,
            duration_ms=round(audio.duration_ms),
            sample_rate=audio.sample_rate,
            latency_ms=round((time.time() - start_time) * 1000),
        )
        return audio

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def decode_wav_segments(audios: list) -> SynthesizedAudio:
    """Decode base64 WAV segments into one PCM buffer at the first segment's rate."""
    pcm_parts = []
    sample_rate = 0
    for segment in audios:
        wav = base64.b64decode(segment)
        rate, pcm = read_wav_mono_pcm16(wav)
        if not sample_rate:
            sample_rate = rate
        elif rate != sample_rate:
            raise ValueError(f"Mixed sample rates in TTS output: {sample_rate} vs {rate}")
        pcm_parts.append(pcm)
    return SynthesizedAudio(pcm=b"".join(pcm_parts), sample_rate=sample_rate)
