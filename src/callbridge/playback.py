"""
Outbound playback pacer.

Twilio expects media at real-time cadence, so synthesized audio is sent one
20ms frame per interval on a wall-clock schedule rather than as a burst.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from src.callbridge.audio import (
    TWILIO_SAMPLE_RATE,
    chunk_audio,
    get_audio_duration_ms,
    tts_pcm_to_twilio_ulaw,
)
from src.callbridge.twilio_protocol import MarkTracker, create_mark_message, create_media_message

logger = structlog.get_logger(__name__)

SendFn = Callable[[str], Awaitable[None]]
IsOpenFn = Callable[[], bool]


@dataclass(frozen=True)
class PlaybackResult:
    success: bool
    duration_ms: float = 0.0
    frames_sent: int = 0
    late_resets: int = 0


class PlaybackPacer:
    """
    Streams PCM to the call as paced mu-law frames.

    `play()` returns failure without sending when the channel is closed, and
    aborts on the first send error; the caller then uses the redirect
    fallback.
    """

    def __init__(
        self,
        send: SendFn,
        is_open: IsOpenFn,
        stream_sid: str,
        frame_ms: int = 20,
        marks: Optional[MarkTracker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._send = send
        self._is_open = is_open
        self.stream_sid = stream_sid
        self.frame_ms = frame_ms
        self.frame_bytes = int(TWILIO_SAMPLE_RATE * frame_ms / 1000)
        self.marks = marks or MarkTracker()
        self._clock = clock
        self._sleep = sleep

    async def play(self, pcm: bytes, source_sample_rate: int) -> PlaybackResult:
        if not self._is_open():
            logger.warning("Playback skipped, outbound channel closed")
            return PlaybackResult(success=False)

        ulaw = tts_pcm_to_twilio_ulaw(pcm, source_sample_rate)
        if not ulaw:
            return PlaybackResult(success=False)

        frame_duration = self.frame_ms / 1000.0
        next_send_time = self._clock()
        frames_sent = 0
        late_resets = 0

        for frame in chunk_audio(ulaw, self.frame_bytes):
            wait_time = next_send_time - self._clock()
            if wait_time > 0:
                await self._sleep(wait_time)

            if not self._is_open():
                logger.warning("Outbound channel closed mid-playback", frames_sent=frames_sent)
                return PlaybackResult(success=False, duration_ms=frames_sent * self.frame_ms, frames_sent=frames_sent)

            try:
                await self._send(create_media_message(self.stream_sid, frame))
            except Exception as e:
                logger.error("Playback send failed", error=str(e), frames_sent=frames_sent)
                return PlaybackResult(success=False, duration_ms=frames_sent * self.frame_ms, frames_sent=frames_sent)

            frames_sent += 1
            next_send_time += frame_duration

            # More than 2 frames behind: resync instead of bursting to catch up.
            if self._clock() > next_send_time + 2 * frame_duration:
                late_resets += 1
                next_send_time = self._clock()

        try:
            await self._send(create_mark_message(self.stream_sid, self.marks.next_name()))
        except Exception as e:
            logger.warning("Playback mark send failed", error=str(e))

        duration_ms = get_audio_duration_ms(ulaw, TWILIO_SAMPLE_RATE, is_ulaw=True)
        logger.debug(
            "Playback complete",
            frames_sent=frames_sent,
            duration_ms=round(duration_ms),
            late_resets=late_resets,
        )
        return PlaybackResult(success=True, duration_ms=duration_ms, frames_sent=frames_sent, late_resets=late_resets)
