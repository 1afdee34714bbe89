"""
Tests for the per-call session state machine.
"""

import pytest

from src.callbridge.session import (
    BatchTranscribed,
    CallStarted,
    CallStopped,
    CloseRecognizer,
    ConnectRecognizer,
    ForwardAudio,
    MediaReceived,
    RecognizerConnected,
    RecognizerLost,
    RecognizerMode,
    RecognizerSignal,
    ReplyFinished,
    Session,
    SessionState,
    StartReply,
    TranscribeChunk,
    transition,
)
from src.callbridge.stt import RecognizerEvent, RecognizerEventKind

FRAME = b"\xff" * 160  # 20ms of mu-law silence


def _final(text, language=None):
    return RecognizerSignal(RecognizerEvent(kind=RecognizerEventKind.FINAL, text=text, language=language, is_final=True))


def _started(mode=None, **kwargs) -> Session:
    session = Session(**kwargs)
    transition(session, CallStarted(call_id="CA1", stream_sid="MZ1"), 0.0)
    if mode == "streaming":
        transition(session, RecognizerConnected(), 0.0)
    elif mode == "batch":
        transition(session, RecognizerLost("unavailable"), 0.0)
    return session


class TestCallLifecycle:
    def test_start(self):
        session = Session()
        effects = transition(session, CallStarted(call_id="CA1", stream_sid="MZ1"), 0.0)

        assert effects == [ConnectRecognizer()]
        assert session.state == SessionState.ACTIVE
        assert session.call_id == "CA1"
        assert session.recognizer_mode == RecognizerMode.PENDING
        assert session.confirmed_language == "en-IN"

    def test_repeated_start_ignored(self):
        session = _started()
        assert transition(session, CallStarted(call_id="CA2"), 1.0) == []
        assert session.call_id == "CA1"

    def test_media_before_start_ignored(self):
        session = Session()
        assert transition(session, MediaReceived(FRAME), 0.0) == []
        assert session.counters.frames_received == 0

    def test_stop_closes_recognizer(self):
        session = _started("streaming")
        assert transition(session, CallStopped(), 1.0) == [CloseRecognizer()]
        assert session.state == SessionState.ENDED

    def test_stop_before_start(self):
        session = Session()
        assert transition(session, CallStopped(), 0.0) == []
        assert session.state == SessionState.ENDED

    def test_events_after_end_ignored(self):
        session = _started("streaming")
        transition(session, CallStopped(), 1.0)

        assert transition(session, MediaReceived(FRAME), 2.0) == []
        assert transition(session, _final("hello"), 2.0) == []
        assert transition(session, CallStarted(call_id="CA9"), 2.0) == []

    def test_stop_releases_buffers(self):
        session = _started()
        transition(session, MediaReceived(FRAME), 0.1)
        transition(session, CallStopped(), 0.2)
        assert session.chunker.buffered_bytes == 0

    def test_unknown_event_type(self):
        with pytest.raises(TypeError):
            transition(Session(), object(), 0.0)


class TestMediaRouting:
    def test_streaming_forwards_16k(self):
        session = _started("streaming")
        effects = transition(session, MediaReceived(FRAME), 0.1)

        assert len(effects) == 1
        assert isinstance(effects[0], ForwardAudio)
        assert effects[0].sample_rate == 16000
        assert len(effects[0].pcm) == 640
        assert session.counters.frames_forwarded == 1

    def test_stereo_media_downmixed(self):
        session = Session()
        transition(session, CallStarted(call_id="CA1", stream_sid="MZ1", channels=2), 0.0)
        transition(session, RecognizerConnected(), 0.0)

        effects = transition(session, MediaReceived(FRAME), 0.1)

        assert session.channel_count == 2
        # 160 interleaved bytes -> 80 mono samples at 8kHz -> 160 samples at 16kHz.
        assert len(effects[0].pcm) == 320

    def test_outbound_track_ignored(self):
        session = _started("streaming")
        assert transition(session, MediaReceived(FRAME, track="outbound"), 0.1) == []
        assert session.counters.frames_received == 0

    def test_pending_audio_flushed_on_connect(self):
        session = _started()
        for i in range(3):
            assert transition(session, MediaReceived(FRAME), 0.02 * i) == []

        effects = transition(session, RecognizerConnected(), 0.1)

        assert len(effects) == 1
        assert isinstance(effects[0], ForwardAudio)
        assert len(effects[0].pcm) == 3 * 640
        assert session.recognizer_mode == RecognizerMode.STREAMING

    def test_pending_audio_kept_for_batch(self):
        session = _started(chunk_seconds=0.1)
        for i in range(4):
            transition(session, MediaReceived(FRAME), 0.02 * i)

        transition(session, RecognizerLost("unavailable"), 0.1)
        effects = transition(session, MediaReceived(FRAME), 0.12)

        assert len(effects) == 1
        assert isinstance(effects[0], TranscribeChunk)
        assert len(effects[0].pcm) == 5 * 320
        assert effects[0].sample_rate == 8000

    def test_batch_chunks_at_threshold(self):
        session = _started("batch", chunk_seconds=0.1)

        effects = [transition(session, MediaReceived(FRAME), 0.02 * i) for i in range(5)]

        assert effects[:4] == [[]] * 4
        assert isinstance(effects[4][0], TranscribeChunk)
        assert session.counters.chunks_transcribed == 1

    def test_recognizer_lost_switches_to_batch(self):
        session = _started("streaming")
        transition(session, RecognizerLost("closed"), 1.0)

        assert session.recognizer_mode == RecognizerMode.BATCH
        effects = transition(session, MediaReceived(FRAME), 1.1)
        assert not any(isinstance(e, ForwardAudio) for e in effects)


class TestReplyExclusion:
    def test_final_starts_reply(self):
        session = _started("streaming")
        effects = transition(session, _final("hello there", "en-IN"), 1.0)

        assert len(effects) == 1
        assert isinstance(effects[0], StartReply)
        assert effects[0].utterance.transcript == "hello there"
        assert effects[0].decision.confirmed == "en-IN"
        assert session.state == SessionState.REPLYING
        assert session.reply_in_flight

    def test_second_utterance_dropped_while_replying(self):
        session = _started("streaming")
        transition(session, _final("first"), 1.0)

        assert transition(session, _final("second"), 1.5) == []
        assert session.counters.utterances_accepted == 1
        assert session.counters.utterances_dropped == 1

    def test_batch_transcript_starts_reply(self):
        session = _started("batch")
        effects = transition(session, BatchTranscribed("नमस्ते", "unknown"), 1.0)

        assert isinstance(effects[0], StartReply)
        assert effects[0].decision.resolved == "hi-IN"
        assert session.confirmed_language == "hi-IN"

    def test_empty_batch_transcript_ignored(self):
        session = _started("batch")
        assert transition(session, BatchTranscribed("  "), 1.0) == []
        assert session.state == SessionState.ACTIVE

    def test_batch_chunks_held_while_replying(self):
        session = _started("batch", chunk_seconds=0.1)
        transition(session, BatchTranscribed("hello"), 1.0)

        for i in range(10):
            assert transition(session, MediaReceived(FRAME), 1.0 + 0.02 * i) == []

    def test_reply_finished_returns_to_active(self):
        session = _started("streaming")
        transition(session, _final("hello"), 1.0)

        assert transition(session, ReplyFinished(playback_ms=2000), 5.0) == []
        assert session.state == SessionState.ACTIVE
        assert not session.reply_in_flight

    def test_reply_finished_without_reply_ignored(self):
        session = _started("streaming")
        transition(session, ReplyFinished(playback_ms=2000), 5.0)
        assert session.ignore_until == 0.0


class TestIgnoreWindow:
    def test_window_set_from_playback(self):
        session = _started("streaming")
        transition(session, _final("hello"), 1.0)
        transition(session, ReplyFinished(playback_ms=1500), 10.0)

        assert session.ignore_until == pytest.approx(10.0 + (1500 + 350) / 1000)

    def test_no_audio_forwarded_inside_window(self):
        session = _started("streaming")
        transition(session, _final("hello"), 1.0)
        transition(session, ReplyFinished(playback_ms=1000), 10.0)
        forwarded_before = session.counters.frames_forwarded

        for i in range(60):
            assert transition(session, MediaReceived(FRAME), 10.0 + 0.02 * i) == []

        assert session.counters.frames_forwarded == forwarded_before
        assert session.counters.frames_ignored == 60

    def test_audio_forwarded_after_window(self):
        session = _started("streaming")
        transition(session, _final("hello"), 1.0)
        transition(session, ReplyFinished(playback_ms=1000), 10.0)

        effects = transition(session, MediaReceived(FRAME), 11.36)
        assert isinstance(effects[0], ForwardAudio)

    def test_utterance_inside_window_dropped(self):
        session = _started("streaming")
        transition(session, _final("hello"), 1.0)
        transition(session, ReplyFinished(playback_ms=1000), 10.0)

        assert transition(session, _final("echo of our reply"), 10.5) == []
        assert session.counters.utterances_dropped == 1

    def test_batch_buffer_cleared_after_reply(self):
        session = _started("batch", chunk_seconds=0.1)
        transition(session, BatchTranscribed("hello"), 1.0)
        for i in range(10):
            transition(session, MediaReceived(FRAME), 1.0 + 0.02 * i)

        transition(session, ReplyFinished(playback_ms=0), 2.0)

        assert session.chunker.buffered_bytes == 0


class TestLanguageFlow:
    def test_confirmed_language_follows_turns(self):
        session = _started("streaming")
        transition(session, _final("kem cho", "en-IN"), 1.0)
        assert session.confirmed_language == "gu-IN"

    def test_strict_session_holds_language(self):
        session = _started("streaming", lang_lock_strictness=2)
        transition(session, _final("kem cho", "en-IN"), 1.0)
        assert session.confirmed_language == "en-IN"


def test_from_config(config):
    session = Session.from_config(config)
    assert session.chunk_seconds == config.chunk_seconds
    assert session.ignore_margin_ms == config.ignore_margin_ms
    assert session.primary_language == config.primary_language
