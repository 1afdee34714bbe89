"""
Sarvam speech-to-text clients.

Two transports, selected once per call by `connect_recognizer()`:
- Streaming: raw WebSocket to Sarvam streaming STT, 16kHz PCM16 frames in,
  speech_start / speech_end / transcript events out.
- Batch: REST upload of a buffered WAV chunk, one transcript back.

If no streaming connection can be established the session falls back to the
batch tier for the rest of the call.
"""

import asyncio
import base64
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
import structlog
import websockets

from src.callbridge.audio import STT_SAMPLE_RATE, write_wav_mono_pcm16
from src.callbridge.config import Config, get_config

logger = structlog.get_logger(__name__)

SARVAM_STREAMING_URL = "wss://api.sarvam.ai/speech-to-text/ws"
SARVAM_REST_STT_URL = "https://api.sarvam.ai/speech-to-text"


class RecognizerEventKind(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"
    PARTIAL = "partial"
    FINAL = "final"


@dataclass(frozen=True)
class RecognizerEvent:
    """One signal from the streaming recognizer."""
    kind: RecognizerEventKind
    text: str = ""
    language: Optional[str] = None
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BatchTranscript:
    """Result of one REST transcription. Empty text means nothing usable."""
    text: str = ""
    language: str = "unknown"


@dataclass
class STTMetrics:
    """Metrics for recognizer traffic."""
    total_audio_ms: float = 0.0
    total_events: int = 0
    final_transcripts: int = 0


EventHandler = Callable[[RecognizerEvent], Awaitable[None]]
ClosedHandler = Callable[[], Awaitable[None]]


class StreamingRecognizer(ABC):
    """Capability boundary for streaming recognizers."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> bool:
        """Open the stream. Returns False instead of raising on failure."""

    @abstractmethod
    async def send_audio(self, pcm: bytes, sample_rate: int = STT_SAMPLE_RATE) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def parse_recognizer_message(data: dict) -> Optional[RecognizerEvent]:
    """
    Map one Sarvam streaming message onto a RecognizerEvent.

    Accepts both shapes the service has used:
    - {"type": "events", "data": {"signal_type": "START_SPEECH" | "END_SPEECH"}}
      and {"type": "data", "data": {"transcript": ..., "language_code": ...}}
    - {"event": "speech_start" | "speech_end" | "transcript", "data": {...}}
    """
    if not isinstance(data, dict):
        return None

    payload = data.get("data")
    if not isinstance(payload, dict):
        payload = {}

    kind = str(data.get("type") or data.get("event") or "").strip().lower()
    signal = str(payload.get("signal_type") or "").strip().lower()
    if kind == "events" and signal:
        kind = {"start_speech": "speech_start", "end_speech": "speech_end"}.get(signal, signal)

    text = str(payload.get("text") or payload.get("transcript") or "").strip()
    language = payload.get("language_code") or payload.get("language") or None

    if kind in ("speech_start", "speech_started"):
        return RecognizerEvent(kind=RecognizerEventKind.SPEECH_START, language=language)

    if kind in ("speech_end", "speech_ended"):
        return RecognizerEvent(kind=RecognizerEventKind.SPEECH_END, text=text, language=language)

    if kind in ("transcript", "data"):
        if "is_final" in payload or "final" in payload or "is_final" in data:
            is_final = bool(payload.get("is_final") or payload.get("final") or data.get("is_final"))
        else:
            # "data" messages without a flag are committed transcripts.
            is_final = kind == "data"
        return RecognizerEvent(
            kind=RecognizerEventKind.FINAL if is_final else RecognizerEventKind.PARTIAL,
            text=text,
            language=language,
            is_final=is_final,
        )

    return None


class SarvamStreamingSTT(StreamingRecognizer):
    """
    Sarvam streaming STT over a raw WebSocket.

    With `vad_signals` on, the service emits speech_start/speech_end around
    each utterance. A mid-stream error or close marks the recognizer
    disconnected and notifies `on_closed`.
    """

    def __init__(
        self,
        on_event: EventHandler,
        *,
        config: Optional[Config] = None,
        language: Optional[str] = None,
        vad_signals: bool = True,
        on_closed: Optional[ClosedHandler] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.language = language or config.sarvam_stt_language or "unknown"
        self.vad_signals = vad_signals
        self._on_event = on_event
        self._on_closed = on_closed
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = STTMetrics()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    @property
    def url(self) -> str:
        params = {
            "model": self.config.sarvam_stt_model,
            "language-code": self.language,
            "sample_rate": STT_SAMPLE_RATE,
            "input_audio_codec": "pcm_s16le",
            "high_vad_sensitivity": "true",
            "vad_signals": "true" if self.vad_signals else "false",
        }
        return f"{SARVAM_STREAMING_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        if self._is_connected:
            return True

        headers = {"api-subscription-key": self.config.sarvam_api_key}
        try:
            logger.info(
                "Connecting to Sarvam streaming STT",
                language=self.language,
                vad_signals=self.vad_signals,
            )
            self._ws = await websockets.connect(
                self.url,
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.warning(
                "Sarvam streaming connection failed",
                vad_signals=self.vad_signals,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Sarvam streaming STT connected", vad_signals=self.vad_signals)
        return True

    async def close(self) -> None:
        self._closing = True
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Sarvam connection", error=str(e))

        self._ws = None
        logger.info("Sarvam streaming STT closed", audio_ms=round(self._metrics.total_audio_ms))

    async def send_audio(self, pcm: bytes, sample_rate: int = STT_SAMPLE_RATE) -> None:
        if not self._is_connected or not self._ws or not pcm:
            return

        message = {
            "audio": {
                "data": base64.b64encode(pcm).decode("ascii"),
                "sample_rate": sample_rate,
                "encoding": "pcm_s16le",
            }
        }
        try:
            await self._ws.send(json.dumps(message))
            self._metrics.total_audio_ms += len(pcm) / 2 / sample_rate * 1000
        except Exception as e:
            logger.error("Failed to send audio to Sarvam", error=str(e))
            await self._mark_lost()

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Invalid JSON from Sarvam")
                    continue
                await self._handle_message(data)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Sarvam connection closed")
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error("Sarvam receive loop error", error=str(e))
        await self._mark_lost()

    async def _handle_message(self, data: Any) -> None:
        if isinstance(data, dict) and str(data.get("type", "")).lower() == "error":
            payload = data.get("data") if isinstance(data.get("data"), dict) else {}
            logger.error("Sarvam streaming error", error=payload.get("message") or payload.get("error") or data)
            await self._mark_lost()
            return

        event = parse_recognizer_message(data)
        if event is None:
            return

        self._metrics.total_events += 1
        if event.kind == RecognizerEventKind.FINAL:
            self._metrics.final_transcripts += 1

        logger.debug(
            "Recognizer event",
            kind=event.kind.value,
            text=event.text[:50],
            language=event.language,
        )
        try:
            await self._on_event(event)
        except Exception as e:
            logger.error("Recognizer event handler failed", error=str(e))

    async def _mark_lost(self) -> None:
        was_connected = self._is_connected
        self._is_connected = False
        if was_connected and not self._closing and self._on_closed:
            await self._on_closed()


class SarvamBatchSTT:
    """REST transcription of buffered audio. Never raises; failures yield an empty transcript."""

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        if config is None:
            config = get_config()
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=15.0)
        return self._client

    async def transcribe(self, pcm: bytes, sample_rate: int) -> BatchTranscript:
        if not pcm:
            return BatchTranscript()

        wav = write_wav_mono_pcm16(pcm, sample_rate)
        files = {"file": ("chunk.wav", wav, "audio/wav")}
        data = {
            "model": self.config.sarvam_stt_model,
            "language_code": self.config.sarvam_stt_language or "unknown",
        }
        headers = {"api-subscription-key": self.config.sarvam_api_key}

        start = time.time()
        try:
            response = await self._get_client().post(
                SARVAM_REST_STT_URL,
                files=files,
                data=data,
                headers=headers,
            )
            if response.status_code != 200:
                logger.error(
                    "Sarvam REST STT error",
                    status=response.status_code,
                    body=response.text[:200],
                )
                return BatchTranscript()
            payload = response.json()
        except Exception as e:
            logger.error("Sarvam REST STT failed", error_type=type(e).__name__, error=str(e))
            return BatchTranscript()

        text = str(payload.get("transcript") or payload.get("text") or "").strip()
        language = str(payload.get("language_code") or payload.get("language") or "unknown")
        logger.debug(
            "Batch transcript",
            text=text[:50],
            language=language,
            latency_ms=round((time.time() - start) * 1000),
        )
        return BatchTranscript(text=text, language=language)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


async def connect_recognizer(
    config: Config,
    on_event: EventHandler,
    on_closed: Optional[ClosedHandler] = None,
) -> Optional[StreamingRecognizer]:
    """
    Pick the recognizer tier for one call.

    1. streaming with VAD signals (auto language)
    2. streaming with a pinned language, no VAD signals
    3. None: the caller uses batch transcription
    """
    if not config.streaming_stt_enabled:
        logger.info("Streaming STT disabled, using batch tier")
        return None

    tiers = (
        ("streaming_vad", config.sarvam_stt_language or "unknown", True),
        ("streaming_pinned", config.primary_language, False),
    )
    for label, language, vad_signals in tiers:
        recognizer = SarvamStreamingSTT(
            on_event,
            config=config,
            language=language,
            vad_signals=vad_signals,
            on_closed=on_closed,
        )
        if await recognizer.connect():
            logger.info("Recognizer tier selected", tier=label)
            return recognizer

    logger.warning("Streaming STT unavailable, using batch tier")
    return None
