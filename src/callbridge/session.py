"""
Per-call session state machine.

All session state changes go through `transition(session, event, now)`,
which mutates only the Session record and returns the effects the pipeline
must perform. It does no I/O and reads no clock; `now` is passed in.

States: IDLE (no call) -> ACTIVE -> REPLYING -> ACTIVE ... -> ENDED.

Mutual exclusion of replies and the self-echo ignore window are enforced
here and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from src.callbridge.audio import (
    STT_SAMPLE_RATE,
    TWILIO_SAMPLE_RATE,
    downmix_pcm16,
    resample_pcm16,
    ulaw_to_linear16,
)
from src.callbridge.buffer import FrameChunker
from src.callbridge.language import DEFAULT_LANGUAGE, LangState, LanguageDecision
from src.callbridge.segmenter import Utterance, UtteranceSegmenter
from src.callbridge.stt import RecognizerEvent
from src.callbridge.twilio_protocol import is_inbound_track


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    REPLYING = "replying"
    ENDED = "ended"


class RecognizerMode(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    BATCH = "batch"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallStarted:
    call_id: str
    stream_sid: str = ""
    sample_rate: int = TWILIO_SAMPLE_RATE
    channels: int = 1


@dataclass(frozen=True)
class MediaReceived:
    payload: bytes  # mu-law
    track: str = "inbound"


@dataclass(frozen=True)
class RecognizerConnected:
    pass


@dataclass(frozen=True)
class RecognizerLost:
    reason: str = ""


@dataclass(frozen=True)
class RecognizerSignal:
    event: RecognizerEvent


@dataclass(frozen=True)
class BatchTranscribed:
    text: str
    language: str = "unknown"


@dataclass(frozen=True)
class ReplyFinished:
    playback_ms: float = 0.0


@dataclass(frozen=True)
class CallStopped:
    reason: str = "stop"


SessionEvent = Union[
    CallStarted,
    MediaReceived,
    RecognizerConnected,
    RecognizerLost,
    RecognizerSignal,
    BatchTranscribed,
    ReplyFinished,
    CallStopped,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectRecognizer:
    pass


@dataclass(frozen=True)
class ForwardAudio:
    pcm: bytes
    sample_rate: int = STT_SAMPLE_RATE


@dataclass(frozen=True)
class TranscribeChunk:
    pcm: bytes
    sample_rate: int = TWILIO_SAMPLE_RATE


@dataclass(frozen=True)
class StartReply:
    utterance: Utterance
    decision: LanguageDecision


@dataclass(frozen=True)
class CloseRecognizer:
    pass


Effect = Union[ConnectRecognizer, ForwardAudio, TranscribeChunk, StartReply, CloseRecognizer]


# ---------------------------------------------------------------------------
# Session record
# ---------------------------------------------------------------------------


@dataclass
class SessionCounters:
    frames_received: int = 0
    frames_ignored: int = 0
    frames_forwarded: int = 0
    chunks_transcribed: int = 0
    utterances_accepted: int = 0
    utterances_dropped: int = 0


@dataclass
class Session:
    """One call's state. Owned by a single pipeline task."""

    chunk_seconds: float = 0.9
    max_buffer_seconds: float = 15.0
    ignore_margin_ms: int = 350
    primary_language: str = DEFAULT_LANGUAGE
    lang_lock_strictness: int = 1

    call_id: str = ""
    stream_sid: str = ""
    sample_rate: int = TWILIO_SAMPLE_RATE
    channel_count: int = 1  # interleaved inbound channels, downmixed to mono
    state: SessionState = SessionState.IDLE
    recognizer_mode: RecognizerMode = RecognizerMode.PENDING
    chunker: Optional[FrameChunker] = None
    segmenter: UtteranceSegmenter = field(default_factory=UtteranceSegmenter)
    reply_in_flight: bool = False
    ignore_until: float = 0.0
    lang_state: LangState = field(default_factory=LangState)
    counters: SessionCounters = field(default_factory=SessionCounters)

    @classmethod
    def from_config(cls, config: Any) -> "Session":
        return cls(
            chunk_seconds=config.chunk_seconds,
            max_buffer_seconds=config.max_buffer_seconds,
            ignore_margin_ms=config.ignore_margin_ms,
            primary_language=config.primary_language,
            lang_lock_strictness=config.lang_lock_strictness,
        )

    @property
    def confirmed_language(self) -> str:
        return self.lang_state.confirmed

    def in_ignore_window(self, now: float) -> bool:
        return now < self.ignore_until


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _on_call_started(session: Session, event: CallStarted, now: float) -> list[Effect]:
    if session.state != SessionState.IDLE:
        # call_id is set once; a repeated start is ignored.
        return []

    session.call_id = event.call_id
    session.stream_sid = event.stream_sid
    session.sample_rate = event.sample_rate if event.sample_rate > 0 else TWILIO_SAMPLE_RATE
    session.channel_count = event.channels if event.channels > 0 else 1
    session.chunker = FrameChunker(
        sample_rate=session.sample_rate,
        chunk_seconds=session.chunk_seconds,
        max_seconds=session.max_buffer_seconds,
    )
    session.segmenter = UtteranceSegmenter(session_id=event.call_id)
    session.lang_state = LangState(
        primary=session.primary_language,
        strictness=session.lang_lock_strictness,
    )
    session.recognizer_mode = RecognizerMode.PENDING
    session.state = SessionState.ACTIVE
    return [ConnectRecognizer()]


def _on_media(session: Session, event: MediaReceived, now: float) -> list[Effect]:
    if session.state not in (SessionState.ACTIVE, SessionState.REPLYING):
        return []
    if not is_inbound_track(event.track):
        return []

    session.counters.frames_received += 1
    if session.in_ignore_window(now):
        session.counters.frames_ignored += 1
        return []
    if not event.payload or session.chunker is None:
        return []

    pcm = downmix_pcm16(ulaw_to_linear16(event.payload), session.channel_count)

    if session.recognizer_mode == RecognizerMode.STREAMING:
        session.counters.frames_forwarded += 1
        return [ForwardAudio(resample_pcm16(pcm, session.sample_rate, STT_SAMPLE_RATE), STT_SAMPLE_RATE)]

    if session.recognizer_mode == RecognizerMode.PENDING:
        # Held until the recognizer tier is known.
        session.chunker.accumulator.append(pcm)
        return []

    chunk = session.chunker.push(pcm, reply_in_flight=session.reply_in_flight)
    if chunk is None:
        return []
    session.counters.chunks_transcribed += 1
    return [TranscribeChunk(chunk, session.sample_rate)]


def _on_recognizer_connected(session: Session, event: RecognizerConnected, now: float) -> list[Effect]:
    if session.state == SessionState.IDLE:
        return []
    session.recognizer_mode = RecognizerMode.STREAMING
    if session.chunker is None or not session.chunker.accumulator:
        return []
    pending = session.chunker.accumulator.drain()
    return [ForwardAudio(resample_pcm16(pending, session.sample_rate, STT_SAMPLE_RATE), STT_SAMPLE_RATE)]


def _on_recognizer_lost(session: Session, event: RecognizerLost, now: float) -> list[Effect]:
    if session.state == SessionState.IDLE:
        return []
    session.recognizer_mode = RecognizerMode.BATCH
    session.segmenter.reset()
    return []


def _accept_utterance(session: Session, utterance: Utterance, now: float) -> list[Effect]:
    if session.state != SessionState.ACTIVE or session.reply_in_flight:
        session.counters.utterances_dropped += 1
        return []
    if session.in_ignore_window(now):
        session.counters.utterances_dropped += 1
        return []

    decision = session.lang_state.resolve(utterance.transcript, utterance.raw_language)
    session.state = SessionState.REPLYING
    session.reply_in_flight = True
    session.counters.utterances_accepted += 1
    return [StartReply(utterance, decision)]


def _on_recognizer_signal(session: Session, event: RecognizerSignal, now: float) -> list[Effect]:
    if session.state not in (SessionState.ACTIVE, SessionState.REPLYING):
        return []
    utterance = session.segmenter.feed(event.event)
    if utterance is None:
        return []
    return _accept_utterance(session, utterance, now)


def _on_batch_transcribed(session: Session, event: BatchTranscribed, now: float) -> list[Effect]:
    if session.state not in (SessionState.ACTIVE, SessionState.REPLYING):
        return []
    text = (event.text or "").strip()
    if not text:
        return []
    utterance = Utterance(session_id=session.call_id, transcript=text, raw_language=event.language or "unknown")
    return _accept_utterance(session, utterance, now)


def _on_reply_finished(session: Session, event: ReplyFinished, now: float) -> list[Effect]:
    if session.state != SessionState.REPLYING:
        return []
    session.state = SessionState.ACTIVE
    session.reply_in_flight = False
    session.ignore_until = now + (max(0.0, event.playback_ms) + session.ignore_margin_ms) / 1000.0
    if session.chunker is not None:
        # Batch audio held during the reply includes our own playback.
        session.chunker.reset()
    return []


def _on_call_stopped(session: Session, event: CallStopped, now: float) -> list[Effect]:
    was_started = session.state != SessionState.IDLE
    session.state = SessionState.ENDED
    session.reply_in_flight = False
    if session.chunker is not None:
        session.chunker.reset()
    session.segmenter.reset()
    return [CloseRecognizer()] if was_started else []


_HANDLERS: dict[type, Callable[[Session, Any, float], list[Effect]]] = {
    CallStarted: _on_call_started,
    MediaReceived: _on_media,
    RecognizerConnected: _on_recognizer_connected,
    RecognizerLost: _on_recognizer_lost,
    RecognizerSignal: _on_recognizer_signal,
    BatchTranscribed: _on_batch_transcribed,
    ReplyFinished: _on_reply_finished,
    CallStopped: _on_call_stopped,
}


def transition(session: Session, event: SessionEvent, now: float) -> list[Effect]:
    """Apply one event to the session and return the effects to perform."""
    if session.state == SessionState.ENDED:
        return []
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown session event: {type(event).__name__}")
    return handler(session, event, now)
