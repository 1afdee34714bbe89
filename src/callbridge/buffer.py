"""
Owned PCM accumulation for the batch recognition path.

When no streaming recognizer is available, inbound audio is collected into
fixed-size chunks and transcribed through the REST endpoint. The session owns
exactly one FrameChunker; nothing else mutates its bytes.
"""

from typing import Optional


class PcmAccumulator:
    """
    Bounded byte accumulator with explicit append/drain.

    Once `max_bytes` is exceeded the oldest bytes are discarded, so the buffer
    never grows without bound during a long stretch with no flush.
    """

    def __init__(self, max_bytes: int = 0):
        self.max_bytes = max(0, int(max_bytes))
        self._buf = bytearray()
        self.dropped_bytes = 0

    def append(self, data: bytes) -> None:
        if not data:
            return
        self._buf.extend(data)
        if self.max_bytes and len(self._buf) > self.max_bytes:
            overflow = len(self._buf) - self.max_bytes
            # Keep sample alignment when trimming PCM16.
            overflow += overflow % 2
            del self._buf[:overflow]
            self.dropped_bytes += overflow

    def drain(self) -> bytes:
        """Return everything buffered and clear the buffer."""
        data = bytes(self._buf)
        self._buf.clear()
        return data

    def clear(self) -> None:
        self._buf.clear()

    def __len__(self) -> int:
        return len(self._buf)

    def __bool__(self) -> bool:
        return len(self._buf) > 0


class FrameChunker:
    """
    Emit fixed-duration PCM16 chunks for batch transcription.

    `push()` returns a chunk once the buffered duration reaches
    `chunk_seconds` and no reply is in flight; otherwise it keeps buffering.
    """

    BYTES_PER_SAMPLE = 2

    def __init__(self, sample_rate: int = 8000, chunk_seconds: float = 0.9, max_seconds: float = 15.0):
        if sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")
        if chunk_seconds <= 0:
            raise ValueError(f"Invalid chunk duration: {chunk_seconds}")

        self.sample_rate = sample_rate
        self.chunk_seconds = chunk_seconds
        self.threshold_bytes = int(sample_rate * chunk_seconds) * self.BYTES_PER_SAMPLE
        max_bytes = int(sample_rate * max(max_seconds, chunk_seconds)) * self.BYTES_PER_SAMPLE
        self.accumulator = PcmAccumulator(max_bytes=max_bytes)

    @property
    def buffered_bytes(self) -> int:
        return len(self.accumulator)

    @property
    def duration_seconds(self) -> float:
        return len(self.accumulator) / (self.sample_rate * self.BYTES_PER_SAMPLE)

    def push(self, pcm: bytes, reply_in_flight: bool = False) -> Optional[bytes]:
        self.accumulator.append(pcm)
        if reply_in_flight:
            return None
        if len(self.accumulator) < self.threshold_bytes:
            return None
        return self.accumulator.drain()

    def reset(self) -> None:
        self.accumulator.clear()
