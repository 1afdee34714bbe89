"""
Tests for the batch-path PCM accumulator and chunker.
"""

import pytest

from src.callbridge.buffer import FrameChunker, PcmAccumulator


class TestPcmAccumulator:
    def test_append_and_drain(self):
        acc = PcmAccumulator()
        acc.append(b"\x01\x02")
        acc.append(b"\x03\x04")

        assert len(acc) == 4
        assert acc.drain() == b"\x01\x02\x03\x04"
        assert len(acc) == 0
        assert not acc

    def test_empty_append_is_noop(self):
        acc = PcmAccumulator()
        acc.append(b"")
        assert not acc

    def test_bounded_drops_oldest(self):
        acc = PcmAccumulator(max_bytes=4)
        acc.append(b"\x01\x02\x03\x04")
        acc.append(b"\x05\x06")

        assert acc.drain() == b"\x03\x04\x05\x06"
        assert acc.dropped_bytes == 2

    def test_trim_keeps_sample_alignment(self):
        acc = PcmAccumulator(max_bytes=4)
        acc.append(b"\x01\x02\x03\x04\x05")

        # One byte over; two are trimmed to stay on a sample boundary.
        assert len(acc) == 3
        assert acc.dropped_bytes == 2

    def test_clear(self):
        acc = PcmAccumulator()
        acc.append(b"\x00" * 10)
        acc.clear()
        assert len(acc) == 0


class TestFrameChunker:
    def test_threshold(self):
        chunker = FrameChunker(sample_rate=8000, chunk_seconds=0.9)
        assert chunker.threshold_bytes == 7200 * 2

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            FrameChunker(sample_rate=0)
        with pytest.raises(ValueError):
            FrameChunker(chunk_seconds=0)

    def test_emits_at_threshold(self):
        chunker = FrameChunker(sample_rate=8000, chunk_seconds=0.1)
        frame = b"\x00\x00" * 160  # 20ms

        results = [chunker.push(frame) for _ in range(5)]

        assert results[:4] == [None] * 4
        assert results[4] is not None
        assert len(results[4]) == 1600
        assert chunker.buffered_bytes == 0

    def test_holds_while_reply_in_flight(self):
        chunker = FrameChunker(sample_rate=8000, chunk_seconds=0.1)
        frame = b"\x00\x00" * 160

        for _ in range(10):
            assert chunker.push(frame, reply_in_flight=True) is None

        assert chunker.duration_seconds == pytest.approx(0.2)
        chunk = chunker.push(frame)
        assert chunk is not None
        assert len(chunk) == 11 * 320

    def test_buffer_is_bounded(self):
        chunker = FrameChunker(sample_rate=8000, chunk_seconds=0.1, max_seconds=0.5)
        frame = b"\x00\x00" * 160

        for _ in range(100):
            chunker.push(frame, reply_in_flight=True)

        assert chunker.buffered_bytes == 8000
        assert chunker.accumulator.dropped_bytes > 0

    def test_reset(self):
        chunker = FrameChunker(sample_rate=8000, chunk_seconds=0.1)
        chunker.push(b"\x00\x00" * 100)
        chunker.reset()
        assert chunker.buffered_bytes == 0
