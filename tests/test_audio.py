"""
Tests for audio conversion utilities.
"""

import numpy as np

from src.callbridge.audio import (
    STT_SAMPLE_RATE,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
    chunk_audio,
    downmix_pcm16,
    downsample_2x,
    get_audio_duration_ms,
    linear16_to_ulaw,
    read_wav_mono_pcm16,
    resample_pcm16,
    tts_pcm_to_twilio_ulaw,
    ulaw_to_linear16,
    upsample_2x,
    write_wav_mono_pcm16,
)


def _samples(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2").astype(np.int32)


ALL_CODES = bytes(range(256))


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_ulaw_to_linear16_empty(self):
        assert ulaw_to_linear16(b"") == b""

    def test_ulaw_to_linear16_silence(self):
        """0xFF is mu-law silence."""
        result = ulaw_to_linear16(b"\xff" * 100)

        assert len(result) == 200
        assert np.abs(_samples(result)).max() == 0

    def test_decode_defined_for_all_bytes(self):
        decoded = _samples(ulaw_to_linear16(ALL_CODES))
        assert len(decoded) == 256
        assert decoded.max() == 32124
        assert decoded.min() == -32124

    def test_decode_known_values(self):
        decoded = _samples(ulaw_to_linear16(bytes([0x00, 0x80, 0x7F, 0xFF])))
        assert list(decoded) == [-32124, 32124, 0, 0]

    def test_linear16_to_ulaw_empty(self):
        assert linear16_to_ulaw(b"") == b""

    def test_linear16_to_ulaw_length(self):
        assert len(linear16_to_ulaw(b"\x00\x00" * 100)) == 100

    def test_encode_zero_is_silence(self):
        assert linear16_to_ulaw(b"\x00\x00") == b"\xff"

    def test_encode_decode_idempotent_for_all_codes(self):
        """Re-encoding a decoded value lands on the same quantization level."""
        decoded = ulaw_to_linear16(ALL_CODES)
        redecoded = ulaw_to_linear16(linear16_to_ulaw(decoded))
        assert redecoded == decoded

    def test_encode_decode_bit_exact_except_negative_zero(self):
        encoded = linear16_to_ulaw(ulaw_to_linear16(ALL_CODES))
        mismatches = [code for code in range(256) if encoded[code] != code]
        assert mismatches == [0x7F]

    def test_quantization_is_monotonic(self):
        x = np.arange(-32768, 32768, 7).astype(np.int16)
        y = _samples(ulaw_to_linear16(linear16_to_ulaw(x.tobytes())))
        assert np.all(np.diff(y) >= 0)

    def test_quantization_is_sign_preserving(self):
        x = np.arange(-32768, 32768, 3).astype(np.int16)
        y = _samples(ulaw_to_linear16(linear16_to_ulaw(x.tobytes())))
        x32 = x.astype(np.int32)
        assert np.all(y[x32 > 0] >= 0)
        assert np.all(y[x32 < 0] <= 0)

    def test_quantization_error_bounded(self):
        x = np.arange(-32768, 32768, 5).astype(np.int16)
        y = _samples(ulaw_to_linear16(linear16_to_ulaw(x.tobytes())))
        err = np.abs(y - x.astype(np.int32))
        # Top segment step is 1024; near zero the step is 8.
        assert err.max() < 1024
        small = np.abs(x.astype(np.int32)) < 100
        assert err[small].max() < 8

    def test_roundtrip_conversion(self):
        """mu-law is lossy but a tone survives with high correlation."""
        samples = np.sin(np.linspace(0, 4 * np.pi, 100)) * 16000
        original = samples.astype(np.int16)

        recovered = _samples(ulaw_to_linear16(linear16_to_ulaw(original.tobytes())))

        correlation = np.corrcoef(original.astype(np.int32), recovered)[0, 1]
        assert correlation > 0.99


class TestResampling:
    """Tests for sample-rate conversion."""

    def test_upsample_empty(self):
        assert upsample_2x(b"") == b""

    def test_downsample_empty(self):
        assert downsample_2x(b"") == b""

    def test_upsample_doubles_count(self):
        pcm = np.arange(100, dtype=np.int16).tobytes()
        assert len(_samples(upsample_2x(pcm))) == 200

    def test_upsample_interleaves_averages(self):
        pcm = np.array([0, 100, -100], dtype=np.int16).tobytes()
        assert list(_samples(upsample_2x(pcm))) == [0, 50, 100, 0, -100, -100]

    def test_downsample_halves_count(self):
        pcm = np.zeros(200, dtype=np.int16).tobytes()
        assert len(_samples(downsample_2x(pcm))) == 100

    def test_downsample_averages_pairs(self):
        pcm = np.array([10, 20, -5, -6, 7], dtype=np.int16).tobytes()
        # Odd trailing sample dropped; floor division.
        assert list(_samples(downsample_2x(pcm))) == [15, -6]

    def test_roundtrip_preserves_count(self):
        for n in (1, 2, 3, 159, 160, 801):
            pcm = np.random.default_rng(n).integers(-20000, 20000, n, dtype=np.int16).tobytes()
            assert len(_samples(downsample_2x(upsample_2x(pcm)))) == n

    def test_roundtrip_constant_is_exact(self):
        pcm = np.full(50, 1234, dtype=np.int16).tobytes()
        assert downsample_2x(upsample_2x(pcm)) == pcm

    def test_roundtrip_error_bounded(self):
        t = np.arange(800) / TWILIO_SAMPLE_RATE
        x = (np.sin(2 * np.pi * 440 * t) * 16000).astype(np.int16)

        y = _samples(downsample_2x(upsample_2x(x.tobytes())))

        x32 = x.astype(np.int32)
        max_step = np.abs(np.diff(x32)).max()
        assert np.abs(y - x32).max() <= max_step / 4 + 1

    def test_resample_same_rate_is_identity(self):
        pcm = np.arange(10, dtype=np.int16).tobytes()
        assert resample_pcm16(pcm, 16000, 16000) == pcm

    def test_resample_dispatches_2x(self):
        pcm = np.arange(10, dtype=np.int16).tobytes()
        assert resample_pcm16(pcm, 8000, 16000) == upsample_2x(pcm)
        assert resample_pcm16(pcm, 16000, 8000) == downsample_2x(pcm)

    def test_resample_arbitrary_ratio(self):
        pcm = np.zeros(2205, dtype=np.int16).tobytes()  # 100ms at 22.05kHz
        result = resample_pcm16(pcm, 22050, 8000)
        assert abs(len(_samples(result)) - 800) <= 1


class TestTwilioConversion:
    """Tests for Twilio-specific conversion functions."""

    def test_tts_pcm_to_twilio_ulaw_empty(self):
        assert tts_pcm_to_twilio_ulaw(b"") == b""

    def test_tts_pcm_to_twilio_ulaw_from_16k(self, tone_pcm_16k):
        result = tts_pcm_to_twilio_ulaw(tone_pcm_16k, source_rate=STT_SAMPLE_RATE)
        assert len(result) == 8000

    def test_tts_pcm_to_twilio_ulaw_from_24k(self):
        pcm_24k = np.zeros(2400, dtype=np.int16).tobytes()  # 100ms at 24kHz
        result = tts_pcm_to_twilio_ulaw(pcm_24k, source_rate=24000)
        assert abs(len(result) - 800) <= 1


class TestChunking:
    """Tests for audio chunking."""

    def test_chunk_audio_empty(self):
        assert list(chunk_audio(b"")) == []

    def test_chunk_audio_exact_multiple(self):
        chunks = list(chunk_audio(b"\xff" * 320, TWILIO_FRAME_SIZE))

        assert len(chunks) == 2
        assert all(len(c) == TWILIO_FRAME_SIZE for c in chunks)

    def test_chunk_audio_with_remainder(self):
        """The last chunk is padded with mu-law silence."""
        chunks = list(chunk_audio(b"\xaa" * 200, TWILIO_FRAME_SIZE))

        assert len(chunks) == 2
        assert len(chunks[1]) == TWILIO_FRAME_SIZE
        assert chunks[1].startswith(b"\xaa" * 40)
        assert chunks[1].endswith(b"\xff" * (TWILIO_FRAME_SIZE - 40))


class TestWav:
    """Tests for WAV helpers."""

    def test_wav_roundtrip(self, tone_pcm_16k):
        wav = write_wav_mono_pcm16(tone_pcm_16k, 16000)
        rate, pcm = read_wav_mono_pcm16(wav)

        assert wav[:4] == b"RIFF"
        assert rate == 16000
        assert pcm == tone_pcm_16k

    def test_read_empty_raises(self):
        import pytest

        with pytest.raises(ValueError):
            read_wav_mono_pcm16(b"")

    def test_read_garbage_raises(self):
        import pytest

        with pytest.raises(ValueError):
            read_wav_mono_pcm16(b"not a wav file at all")

    def test_read_stereo_downmixes(self):
        import io
        import wave

        stereo = np.array([100, 300, -100, -300], dtype=np.int16).tobytes()
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(2)
            wf.setsampwidth(2)
            wf.setframerate(22050)
            wf.writeframes(stereo)

        rate, pcm = read_wav_mono_pcm16(buf.getvalue())

        assert rate == 22050
        assert list(_samples(pcm)) == [200, -200]

    def test_downmix_mono_is_unchanged(self):
        pcm = np.array([1, 2, 3], dtype="<i2").tobytes()
        assert downmix_pcm16(pcm, 1) == pcm

    def test_downmix_drops_partial_frame(self):
        pcm = np.array([10, 20, -10, -30, 99], dtype="<i2").tobytes()
        assert list(_samples(downmix_pcm16(pcm, 2))) == [15, -20]


class TestUtilities:
    """Tests for utility functions."""

    def test_get_audio_duration_ms_ulaw(self):
        assert get_audio_duration_ms(b"\xff" * 8000, is_ulaw=True) == 1000.0

    def test_get_audio_duration_ms_pcm(self):
        assert get_audio_duration_ms(b"\x00" * 32000, sample_rate=16000, is_ulaw=False) == 1000.0

    def test_get_audio_duration_ms_empty(self):
        assert get_audio_duration_ms(b"") == 0.0

    def test_frame_size_is_20ms(self):
        assert TWILIO_FRAME_SIZE == int(TWILIO_SAMPLE_RATE * 20 / 1000) == 160
