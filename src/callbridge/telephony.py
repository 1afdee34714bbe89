"""
Out-of-band call control through the Twilio REST API.

Used when paced playback fails or no audio was synthesized: the live call is
redirected to TwiML that plays a hosted WAV (or speaks text), then reconnects
the media stream so the conversation can continue.

Hosted WAVs are checked with HEAD requests before Twilio is pointed at them,
and files older than `audio_max_age_seconds` are pruned on each save.
"""

import asyncio
import time
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog
from twilio.rest import Client
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.callbridge.audio import write_wav_mono_pcm16
from src.callbridge.config import get_config

logger = structlog.get_logger(__name__)

# Locales Twilio's <Say> can voice directly.
SAY_LANGUAGES = {"en-IN", "hi-IN", "ta-IN", "te-IN", "kn-IN", "ml-IN", "mr-IN", "bn-IN", "gu-IN", "pa-IN"}

AUDIO_FILE_PREFIX = "tts_"
VERIFY_ATTEMPTS = 4
VERIFY_DELAY_SECONDS = 0.3


def build_stream_twiml(stream_url: str, *, play_url: str = "", say_text: str = "", language: str = "") -> str:
    """TwiML that optionally plays/speaks something, then (re)connects the media stream."""
    response = VoiceResponse()
    if play_url:
        response.play(play_url)
    if say_text:
        if language in SAY_LANGUAGES:
            response.say(say_text, language=language)
        else:
            response.say(say_text)
    connect = Connect()
    connect.stream(url=stream_url, track="inbound_track")
    response.append(connect)
    return str(response)


def prune_audio_dir(audio_dir: str, max_age_seconds: float, now: Optional[float] = None) -> int:
    """Delete hosted fallback WAVs older than `max_age_seconds`. Returns the number removed."""
    directory = Path(audio_dir)
    if max_age_seconds <= 0 or not directory.is_dir():
        return 0

    cutoff = (time.time() if now is None else now) - max_age_seconds
    removed = 0
    for path in directory.glob(f"{AUDIO_FILE_PREFIX}*.wav"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    if removed:
        logger.info("Pruned hosted audio files", audio_dir=audio_dir, removed=removed)
    return removed


class CallControl:
    """Twilio call-control fallback. Methods log errors and return False instead of raising."""

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[Client] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if config is None:
            config = get_config()
        self.config = config
        self._client = client
        self._http = http_client
        self._owns_http = http_client is None

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self.config.twilio_account_sid, self.config.twilio_auth_token)
        return self._client

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=5.0, follow_redirects=True)
        return self._http

    async def _redirect(self, call_sid: str, twiml: str) -> bool:
        if not call_sid:
            logger.warning("Call redirect skipped, no call SID")
            return False

        def _update() -> None:
            self._get_client().calls(call_sid).update(twiml=twiml)

        try:
            await asyncio.to_thread(_update)
        except Exception as e:
            logger.error("Call redirect failed", call_sid=call_sid, error_type=type(e).__name__, error=str(e))
            return False
        return True

    async def play_url(self, call_sid: str, url: str, reconnect_stream: bool = True) -> bool:
        if reconnect_stream:
            twiml = build_stream_twiml(self.config.stream_url, play_url=url)
        else:
            response = VoiceResponse()
            response.play(url)
            twiml = str(response)
        ok = await self._redirect(call_sid, twiml)
        if ok:
            logger.info("Call redirected to hosted audio", call_sid=call_sid, url=url)
        return ok

    async def say_text(self, call_sid: str, text: str, language: str) -> bool:
        twiml = build_stream_twiml(self.config.stream_url, say_text=text, language=language)
        ok = await self._redirect(call_sid, twiml)
        if ok:
            logger.info("Call redirected to spoken text", call_sid=call_sid, language=language)
        return ok

    async def save_audio(self, call_id: str, pcm: bytes, sample_rate: int) -> Optional[str]:
        """Write a WAV under `audio_dir` and return its public URL."""
        if not pcm:
            return None

        filename = f"{AUDIO_FILE_PREFIX}{call_id or 'call'}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.wav"
        path = Path(self.config.audio_dir) / filename
        wav = write_wav_mono_pcm16(pcm, sample_rate)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            prune_audio_dir(self.config.audio_dir, self.config.audio_max_age_seconds)
            path.write_bytes(wav)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error("Failed to save TTS audio", path=str(path), error=str(e))
            return None

        return self.config.audio_url(filename)

    async def verify_audio_url(
        self,
        url: str,
        attempts: int = VERIFY_ATTEMPTS,
        delay_seconds: float = VERIFY_DELAY_SECONDS,
    ) -> bool:
        """
        HEAD the hosted audio until it answers with an audio content type.

        A non-audio content type fails immediately; HTTP errors and transport
        errors are retried up to `attempts` times.
        """
        for attempt in range(attempts):
            try:
                response = await self._get_http().head(url)
            except httpx.HTTPError as e:
                logger.warning("Audio URL check failed", url=url, attempt=attempt, error=str(e))
            else:
                if response.is_success:
                    content_type = response.headers.get("content-type", "").lower()
                    if "audio" in content_type or "wav" in content_type:
                        return True
                    logger.warning("Audio URL is not audio", url=url, content_type=content_type)
                    return False
                logger.warning("Audio URL check failed", url=url, attempt=attempt, status=response.status_code)
            if attempt + 1 < attempts:
                await asyncio.sleep(delay_seconds)
        return False

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
