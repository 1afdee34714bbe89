"""
Utterance segmentation over recognizer signals.

IDLE -> SPEAKING -> IDLE, driven by speech_start / speech_end / partial /
final events. The closing signal (a final transcript, or a speech_end that
carries text) emits exactly one Utterance.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from src.callbridge.stt import RecognizerEvent, RecognizerEventKind


class SegmenterState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class Utterance:
    """One complete unit of caller speech, consumed once by the session."""

    session_id: str
    transcript: str
    raw_language: str = "unknown"
    is_final: bool = True


class UtteranceSegmenter:
    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self.state = SegmenterState.IDLE
        self._text = ""
        self._language: Optional[str] = None
        # Set when speech_end closed the utterance; the trailing final is swallowed.
        self._closed_by_speech_end = False

    def reset(self) -> None:
        self.state = SegmenterState.IDLE
        self._text = ""
        self._language = None
        self._closed_by_speech_end = False

    def feed(self, event: RecognizerEvent) -> Optional[Utterance]:
        """Advance on one recognizer event; return an Utterance when one closes."""
        if event.language:
            self._language = event.language

        if event.kind == RecognizerEventKind.SPEECH_START:
            self.state = SegmenterState.SPEAKING
            self._text = ""
            self._language = event.language or None
            self._closed_by_speech_end = False
            return None

        if event.kind == RecognizerEventKind.PARTIAL:
            if self._closed_by_speech_end:
                return None
            self.state = SegmenterState.SPEAKING
            if event.text:
                self._text = event.text
            return None

        if event.kind == RecognizerEventKind.SPEECH_END:
            if self.state != SegmenterState.SPEAKING:
                return None
            self.state = SegmenterState.IDLE
            text = (event.text or self._text).strip()
            if not text:
                # Wait for the final transcript.
                return None
            self._closed_by_speech_end = True
            return self._emit(text)

        if event.kind == RecognizerEventKind.FINAL:
            if self._closed_by_speech_end:
                self._closed_by_speech_end = False
                self.state = SegmenterState.IDLE
                self._text = ""
                return None
            self.state = SegmenterState.IDLE
            text = (event.text or self._text).strip()
            if not text:
                self._text = ""
                return None
            return self._emit(text)

        return None

    def _emit(self, text: str) -> Utterance:
        utterance = Utterance(
            session_id=self.session_id,
            transcript=text,
            raw_language=self._language or "unknown",
            is_final=True,
        )
        self._text = ""
        return utterance
