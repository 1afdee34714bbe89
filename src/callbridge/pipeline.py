"""Per-call pipeline orchestration.

inbound Twilio mu-law -> session state machine -> (streaming STT | batch STT)
-> utterance -> language decision -> DeepSeek reply -> Sarvam TTS -> paced
mu-law frames -> Twilio outbound

Everything that touches the session goes through one asyncio.Queue consumed
by a single runner task, which applies `transition()` and executes the
returned effects. Transport messages, recognizer events, batch transcripts
and reply completions are all posted to that queue, so handling a message
never blocks on recognizer or reply I/O.

Fallbacks:
- streaming STT unavailable or lost -> batch REST transcription
- paced playback fails -> Twilio redirect to the hosted WAV, or <Say> when
  the WAV cannot be fetched
- no synthesized audio -> Twilio <Say> with the reply text
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from src.callbridge.config import Config, get_config
from src.callbridge.llm import DeepSeekLLM
from src.callbridge.playback import PlaybackPacer
from src.callbridge.reply import ReplyOutcome, ReplyPipeline
from src.callbridge.session import (
    BatchTranscribed,
    CallStarted,
    CallStopped,
    CloseRecognizer,
    ConnectRecognizer,
    Effect,
    ForwardAudio,
    MediaReceived,
    RecognizerConnected,
    RecognizerLost,
    RecognizerSignal,
    ReplyFinished,
    Session,
    SessionEvent,
    SessionState,
    StartReply,
    TranscribeChunk,
    transition,
)
from src.callbridge.stt import (
    RecognizerEvent,
    SarvamBatchSTT,
    StreamingRecognizer,
    connect_recognizer,
)
from src.callbridge.telephony import CallControl
from src.callbridge.tts import SarvamTTS
from src.callbridge.twilio_protocol import (
    MarkTracker,
    TwilioEventType,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

SendFn = Callable[[str], Awaitable[None]]
RecognizerFactory = Callable[..., Awaitable[Optional[StreamingRecognizer]]]

_LOG_TEXT_MAX = 80


def _preview(text: str) -> str:
    text = text or ""
    return text if len(text) <= _LOG_TEXT_MAX else text[:_LOG_TEXT_MAX] + "..."


@dataclass
class TurnMetrics:
    """Metrics for a single reply turn."""
    turn_id: int = 0
    start_time: float = 0.0
    language: str = ""
    reply_ms: float = 0.0
    playback_ms: float = 0.0
    total_turn_ms: float = 0.0
    playback: str = ""  # "paced" | "redirect" | "say" | "none"

    def finalize(self) -> None:
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    recognizer_mode: str = ""
    recognizer_fallbacks: int = 0
    redirect_fallbacks: int = 0
    say_fallbacks: int = 0
    parse_errors: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "recognizer_mode": self.recognizer_mode,
            "recognizer_fallbacks": self.recognizer_fallbacks,
            "redirect_fallbacks": self.redirect_fallbacks,
            "say_fallbacks": self.say_fallbacks,
            "parse_errors": self.parse_errors,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


class CallPipeline:
    """
    One call's runner.

    Collaborators are injectable; by default they are built from `config`.
    """

    def __init__(
        self,
        send_message: SendFn,
        config: Optional[Config] = None,
        *,
        is_open: Optional[Callable[[], bool]] = None,
        reply_pipeline: Optional[ReplyPipeline] = None,
        batch_stt: Optional[SarvamBatchSTT] = None,
        call_control: Optional[CallControl] = None,
        recognizer_factory: Optional[RecognizerFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        pacer_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._send_message = send_message
        self._transport_open = is_open or (lambda: True)
        self._clock = clock
        self._pacer_sleep = pacer_sleep

        self._tts: Optional[SarvamTTS] = None
        if reply_pipeline is None:
            self._tts = SarvamTTS(config)
            reply_pipeline = ReplyPipeline(DeepSeekLLM(config), self._tts)
        self._reply = reply_pipeline
        self._batch_stt = batch_stt or SarvamBatchSTT(config)
        self._owns_call_control = call_control is None
        self._call_control = call_control or CallControl(config)
        self._recognizer_factory = recognizer_factory or connect_recognizer

        self.session = Session.from_config(config)
        self._events: "asyncio.Queue[Optional[SessionEvent]]" = asyncio.Queue()
        self._recognizer: Optional[StreamingRecognizer] = None
        self._runner_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        # Batch chunks are transcribed one at a time so results arrive in order.
        self._batch_lock = asyncio.Lock()
        self._marks = MarkTracker()
        self._metrics = CallMetrics()
        self._current_turn = 0
        self._is_running = False
        self._stopped = False

    @property
    def call_sid(self) -> str:
        return self.session.call_id

    @property
    def stream_sid(self) -> str:
        return self.session.stream_sid

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def metrics(self) -> CallMetrics:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        self._is_running = True
        if self._runner_task is None or self._runner_task.done():
            self._runner_task = asyncio.create_task(self._run())
        logger.debug("Call pipeline started")

    async def stop(self, reason: str = "stop") -> None:
        """End the call: close the recognizer, abandon outstanding reply results."""
        if self._stopped:
            return
        self._stopped = True

        self.post(CallStopped(reason=reason))
        if self._runner_task and not self._runner_task.done():
            try:
                await asyncio.wait_for(self._runner_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._runner_task.cancel()
                await asyncio.gather(self._runner_task, return_exceptions=True)

        self._is_running = False

        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
            await asyncio.gather(self._connect_task, return_exceptions=True)
        await self._close_recognizer()

        # In-flight network calls may finish; their results are dropped.
        cleanup = asyncio.create_task(self._close_clients(list(self._background)))
        self._track(cleanup)

        self._metrics.end_time = time.time()
        logger.info("Call pipeline stopped", reason=reason, metrics=self.summary())

    def summary(self) -> Dict[str, Any]:
        """Call metrics merged with the session counters."""
        counters = self.session.counters
        chunker = self.session.chunker
        metrics = self._metrics.to_dict()
        metrics.update(
            {
                "frames_received": counters.frames_received,
                "frames_ignored": counters.frames_ignored,
                "frames_forwarded": counters.frames_forwarded,
                "chunks_transcribed": counters.chunks_transcribed,
                "buffer_dropped_bytes": chunker.accumulator.dropped_bytes if chunker else 0,
                "utterances_accepted": counters.utterances_accepted,
                "utterances_dropped": counters.utterances_dropped,
                "confirmed_language": self.session.confirmed_language,
                "language_switches": self.session.lang_state.switches,
                "mark_rtt_ms": round(self._marks.avg_rtt_ms, 2),
            }
        )
        return metrics

    def post(self, event: SessionEvent) -> None:
        """Enqueue a session event without blocking."""
        self._events.put_nowait(event)

    async def handle_message(self, raw_message: str) -> None:
        """Parse one Twilio WebSocket message and enqueue the matching session event."""
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._metrics.parse_errors += 1
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            self._metrics.call_sid = event.call_sid
            self._metrics.stream_sid = event.stream_sid
            logger.info(
                "Call started",
                call_sid=event.call_sid,
                stream_sid=event.stream_sid,
                sample_rate=event.sample_rate,
                channels=event.channels,
            )
            self.post(
                CallStarted(
                    call_id=event.call_sid,
                    stream_sid=event.stream_sid,
                    sample_rate=event.sample_rate,
                    channels=event.channels,
                )
            )

        elif event_type == TwilioEventType.MEDIA:
            self.post(MediaReceived(payload=event.payload, track=event.track))

        elif event_type == TwilioEventType.MARK:
            rtt_ms = self._marks.acknowledge(event.name)
            if rtt_ms is not None:
                logger.debug("Twilio mark ack", mark_name=event.name, mark_rtt_ms=round(rtt_ms, 2))

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Stream stop", call_sid=self.call_sid)
            await self.stop(reason="stop")

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            if event is None:
                break
            effects = transition(self.session, event, self._clock())
            for effect in effects:
                try:
                    await self._execute(effect)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Effect failed", effect=type(effect).__name__, error=str(e))
            if self.session.state == SessionState.ENDED:
                break

    async def _execute(self, effect: Effect) -> None:
        if isinstance(effect, ForwardAudio):
            if self._recognizer is not None:
                await self._recognizer.send_audio(effect.pcm, effect.sample_rate)
        elif isinstance(effect, TranscribeChunk):
            self._track(asyncio.create_task(self._transcribe_chunk(effect)))
        elif isinstance(effect, StartReply):
            self._track(asyncio.create_task(self._run_reply(effect)))
        elif isinstance(effect, ConnectRecognizer):
            self._connect_task = asyncio.create_task(self._connect_recognizer())
        elif isinstance(effect, CloseRecognizer):
            await self._close_recognizer()

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Recognizer
    # ------------------------------------------------------------------

    async def _connect_recognizer(self) -> None:
        try:
            recognizer = await self._recognizer_factory(
                self.config,
                self._on_recognizer_event,
                self._on_recognizer_closed,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Recognizer connect failed", error=str(e))
            recognizer = None

        if self._stopped:
            if recognizer is not None:
                await recognizer.close()
            return

        if recognizer is None:
            self._metrics.recognizer_mode = "batch"
            self.post(RecognizerLost(reason="unavailable"))
            return

        self._recognizer = recognizer
        self._metrics.recognizer_mode = "streaming"
        self.post(RecognizerConnected())

    async def _on_recognizer_event(self, event: RecognizerEvent) -> None:
        self.post(RecognizerSignal(event))

    async def _on_recognizer_closed(self) -> None:
        if self._stopped:
            return
        logger.warning("Streaming recognizer lost, falling back to batch", call_sid=self.call_sid)
        self._metrics.recognizer_fallbacks += 1
        self._metrics.recognizer_mode = "batch"
        self._track(asyncio.create_task(self._close_recognizer()))
        self.post(RecognizerLost(reason="closed"))

    async def _close_recognizer(self) -> None:
        recognizer, self._recognizer = self._recognizer, None
        if recognizer is None:
            return
        try:
            await recognizer.close()
        except Exception as e:
            logger.warning("Error closing recognizer", error=str(e))

    async def _transcribe_chunk(self, effect: TranscribeChunk) -> None:
        # asyncio.Lock wakes waiters FIFO, and tasks reach it in dispatch order.
        async with self._batch_lock:
            if self._stopped:
                return
            result = await self._batch_stt.transcribe(effect.pcm, effect.sample_rate)
            if self._stopped or not result.text:
                return
            logger.info("Batch transcript", text=_preview(result.text), language=result.language)
            self.post(BatchTranscribed(text=result.text, language=result.language))

    # ------------------------------------------------------------------
    # Reply turn
    # ------------------------------------------------------------------

    def _channel_open(self) -> bool:
        return self._is_running and not self._stopped and self._transport_open()

    def _make_pacer(self) -> PlaybackPacer:
        kwargs: Dict[str, Any] = {}
        if self._pacer_sleep is not None:
            kwargs["sleep"] = self._pacer_sleep
        return PlaybackPacer(
            self._send_message,
            self._channel_open,
            self.stream_sid,
            frame_ms=self.config.frame_duration_ms,
            marks=self._marks,
            **kwargs,
        )

    async def _run_reply(self, effect: StartReply) -> None:
        self._current_turn += 1
        turn = TurnMetrics(
            turn_id=self._current_turn,
            start_time=time.time(),
            language=effect.decision.confirmed,
        )
        language = effect.decision.confirmed
        logger.info(
            "Utterance accepted",
            call_sid=self.call_sid,
            text=_preview(effect.utterance.transcript),
            language=language,
            resolved=effect.decision.resolved,
            raw_language=effect.decision.raw,
            reason=effect.decision.reason,
        )

        playback_ms = 0.0
        try:
            outcome = await self._reply.run(effect.utterance, language)
            turn.reply_ms = (time.time() - turn.start_time) * 1000
            if self._stopped:
                turn.playback = "none"
                return
            playback_ms, turn.playback = await self._play(outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reply turn failed", call_sid=self.call_sid, error=str(e))
            turn.playback = turn.playback or "none"
        finally:
            turn.playback_ms = playback_ms
            self.post(ReplyFinished(playback_ms=playback_ms))
            self._end_turn(turn)

    async def _play(self, outcome: ReplyOutcome) -> tuple[float, str]:
        """Play a reply; returns (playback_ms, mechanism)."""
        if not outcome.has_audio:
            self._metrics.say_fallbacks += 1
            logger.warning("No synthesized audio, using spoken-text fallback", call_sid=self.call_sid)
            await self._call_control.say_text(self.call_sid, outcome.reply, outcome.language)
            return 0.0, "say"

        audio = outcome.audio
        result = await self._make_pacer().play(audio.pcm, audio.sample_rate)
        if result.success:
            return result.duration_ms, "paced"

        self._metrics.redirect_fallbacks += 1
        logger.warning(
            "Paced playback failed, redirecting call to hosted audio",
            call_sid=self.call_sid,
            frames_sent=result.frames_sent,
        )
        url = await self._call_control.save_audio(self.call_sid, audio.pcm, audio.sample_rate)
        if url and await self._call_control.verify_audio_url(url):
            if await self._call_control.play_url(self.call_sid, url, reconnect_stream=True):
                return audio.duration_ms, "redirect"
            return result.duration_ms, "none"

        self._metrics.say_fallbacks += 1
        logger.warning("Hosted audio unreachable, using spoken-text fallback", call_sid=self.call_sid, url=url)
        await self._call_control.say_text(self.call_sid, outcome.reply, outcome.language)
        return result.duration_ms, "say"

    def _end_turn(self, turn: TurnMetrics) -> None:
        turn.finalize()
        self._metrics.turns.append(turn)
        logger.info(
            "Turn completed",
            turn_id=turn.turn_id,
            language=turn.language,
            reply_ms=round(turn.reply_ms, 2),
            playback_ms=round(turn.playback_ms, 2),
            total_turn_ms=round(turn.total_turn_ms, 2),
            playback=turn.playback,
        )

    async def _close_clients(self, pending: List[asyncio.Task]) -> None:
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._batch_stt.aclose()
        if self._tts is not None:
            await self._tts.aclose()
        if self._owns_call_control:
            await self._call_control.aclose()


async def create_pipeline(
    send_message: SendFn,
    config: Optional[Config] = None,
    **kwargs: Any,
) -> CallPipeline:
    """
    Create and start a new call pipeline.

    Args:
        send_message: Function to send messages to the Twilio WebSocket
        config: Application config (defaults to the cached environment config)
    """
    pipeline = CallPipeline(send_message, config, **kwargs)
    await pipeline.start()
    return pipeline
