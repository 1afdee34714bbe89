"""
Twilio Media Streams WebSocket protocol.

Inbound JSON events:
- connected: Initial connection
- start: Stream started; streamSid, callSid and the media format
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

from src.callbridge.audio import TWILIO_SAMPLE_RATE

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

# Track labels Twilio uses for caller audio; older streams omit the field.
INBOUND_TRACKS = ("inbound", "inbound_track", "")


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


def _as_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def is_inbound_track(track: str) -> bool:
    return track in INBOUND_TRACKS


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    sample_rate: int = TWILIO_SAMPLE_RATE
    channels: int = 1
    encoding: str = "audio/x-mulaw"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start") or {}
        # Twilio reports mediaFormat; older payloads put the format under media.
        media_format = start.get("mediaFormat") or start.get("media") or {}
        sample_rate = media_format.get("sampleRate", media_format.get("sample_rate"))
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=list(start.get("tracks") or []),
            custom_parameters=dict(start.get("customParameters") or {}),
            sample_rate=_as_int(sample_rate, TWILIO_SAMPLE_RATE),
            channels=_as_int(media_format.get("channels"), 1),
            encoding=media_format.get("encoding") or "audio/x-mulaw",
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media") or {}
        try:
            payload = base64.b64decode(media.get("payload", ""))
        except (binascii.Error, TypeError, ValueError):
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=_as_int(media.get("chunk"), 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark") or {}
        return cls(stream_sid=message.get("streamSid", ""), name=mark.get("name", ""))


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf") or {}
        return cls(stream_sid=message.get("streamSid", ""), digit=dtmf.get("digit", ""))


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop") or {}
        return cls(stream_sid=message.get("streamSid", ""), call_sid=stop.get("callSid", ""))


def parse_twilio_message(raw_message: Any) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed or the event is unknown
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (160 bytes for 20ms)
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("utf-8")},
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """Create a Twilio mark message, acknowledged once playback reaches it."""
    message = {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}
    return encoder.encode(message).decode("utf-8")


class MarkTracker:
    """Tracks outstanding playback marks for round-trip timing."""

    def __init__(self, max_samples: int = 20):
        self.max_samples = max_samples
        self._sequence = 0
        self.pending: Dict[str, float] = {}
        self.rtt_samples: List[float] = []

    def next_name(self, prefix: str = "reply") -> str:
        self._sequence += 1
        name = f"{prefix}_{self._sequence}"
        self.pending[name] = time.time()
        return name

    def acknowledge(self, name: str) -> Optional[float]:
        """Record a mark acknowledgment. Returns RTT in ms, or None for unknown marks."""
        sent_at = self.pending.pop(name, None)
        if sent_at is None:
            return None
        rtt_ms = (time.time() - sent_at) * 1000
        self.rtt_samples.append(rtt_ms)
        if len(self.rtt_samples) > self.max_samples:
            self.rtt_samples.pop(0)
        return rtt_ms

    @property
    def avg_rtt_ms(self) -> float:
        if not self.rtt_samples:
            return 0.0
        return sum(self.rtt_samples) / len(self.rtt_samples)
