"""
Audio conversion utilities for the call bridge.

- Twilio sends and accepts 8kHz mono mu-law in 20ms frames (160 bytes)
- The streaming recognizer takes 16kHz linear PCM16
- The synthesizer returns WAV PCM16 at its own rate (16kHz by default)

The mu-law codec is standard G.711 (bias 0x84, clip 32635), vectorized with
numpy lookup tables. The 2:1 rate converters duplicate/average samples with
no anti-aliasing filter.
"""

import io
import wave
from typing import Generator

import numpy as np

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 16000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = 0xFF

_ULAW_BIAS = 0x84
_ULAW_CLIP = 32635


def _build_ulaw_decode_table() -> np.ndarray:
    codes = np.arange(256, dtype=np.int32)
    inverted = ~codes & 0xFF
    sign = inverted & 0x80
    exponent = (inverted >> 4) & 0x07
    mantissa = inverted & 0x0F
    magnitude = (((mantissa << 3) + _ULAW_BIAS) << exponent) - _ULAW_BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


_ULAW_DECODE_TABLE = _build_ulaw_decode_table()

# Segment (exponent) lookup for the biased magnitude >> 7, which is always 1..255.
_ULAW_EXPONENT_TABLE = np.floor(np.log2(np.maximum(np.arange(256), 1))).astype(np.int32)


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit (little-endian).

    Defined for every byte value; output is twice the input length.
    """
    if not ulaw_bytes:
        return b""

    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _ULAW_DECODE_TABLE[codes].astype("<i2").tobytes()


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Magnitudes are clipped at 32635 before companding; a trailing odd byte is
    ignored.
    """
    if not pcm_bytes:
        return b""

    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.int32)

    sign = (samples >> 8) & 0x80
    magnitude = np.where(sign != 0, -samples, samples)
    magnitude = np.clip(magnitude, 0, _ULAW_CLIP) + _ULAW_BIAS

    exponent = _ULAW_EXPONENT_TABLE[(magnitude >> 7) & 0xFF]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    ulaw = ~(sign | (exponent << 4) | mantissa) & 0xFF

    return ulaw.astype(np.uint8).tobytes()


def _pcm16_samples(pcm_bytes: bytes) -> np.ndarray:
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    return np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.int32)


def upsample_2x(pcm_bytes: bytes) -> bytes:
    """
    Double the sample rate of PCM16 audio (e.g. 8kHz -> 16kHz).

    Each sample is followed by the floor-average with its successor; the last
    sample is duplicated. Output has exactly twice as many samples.
    """
    samples = _pcm16_samples(pcm_bytes)
    if samples.size == 0:
        return b""

    out = np.empty(samples.size * 2, dtype=np.int32)
    out[0::2] = samples
    out[1:-1:2] = (samples[:-1] + samples[1:]) // 2
    out[-1] = samples[-1]
    return out.astype("<i2").tobytes()


def downsample_2x(pcm_bytes: bytes) -> bytes:
    """
    Halve the sample rate of PCM16 audio (e.g. 16kHz -> 8kHz).

    Adjacent pairs are floor-averaged; an odd trailing sample is dropped.
    """
    samples = _pcm16_samples(pcm_bytes)
    pairs = samples.size // 2
    if pairs == 0:
        return b""

    out = (samples[0:pairs * 2:2] + samples[1:pairs * 2:2]) // 2
    return out.astype("<i2").tobytes()


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate`.

    2:1 ratios use the cheap duplication/averaging converters; any other ratio
    falls back to linear interpolation.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError(f"Invalid sample rates: {source_rate} -> {target_rate}")

    if target_rate == source_rate * 2:
        return upsample_2x(pcm_bytes)
    if source_rate == target_rate * 2:
        return downsample_2x(pcm_bytes)

    samples = _pcm16_samples(pcm_bytes)
    if samples.size == 0:
        return b""

    out_count = max(1, int(round(samples.size * target_rate / source_rate)))
    positions = np.arange(out_count) * (source_rate / target_rate)
    resampled = np.interp(positions, np.arange(samples.size), samples.astype(np.float64))
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


def downmix_pcm16(pcm_bytes: bytes, channels: int) -> bytes:
    """Average interleaved PCM16 channels down to mono. A trailing partial frame is dropped."""
    if channels <= 1 or not pcm_bytes:
        return pcm_bytes
    samples = _pcm16_samples(pcm_bytes)
    usable = samples.size - samples.size % channels
    mono = samples[:usable].reshape(-1, channels).sum(axis=1) // channels
    return mono.astype("<i2").tobytes()


def tts_pcm_to_twilio_ulaw(pcm_bytes: bytes, source_rate: int = STT_SAMPLE_RATE) -> bytes:
    """
    Convert synthesizer PCM16 output to Twilio 8kHz mu-law.

    Args:
        pcm_bytes: PCM16 bytes from TTS
        source_rate: TTS output sample rate

    Returns:
        Mu-law bytes at 8kHz
    """
    if not pcm_bytes:
        return b""
    pcm_8k = resample_pcm16(pcm_bytes, source_rate, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.
    The last frame is padded with mu-law silence.
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM16 (2 bytes per sample)
    """
    if not audio_bytes or sample_rate <= 0:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    return num_samples / sample_rate * 1000


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV: {e}") from e

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels not in (1, 2):
        raise ValueError(f"Unsupported WAV channel count: {channels}")
    return int(sample_rate), downmix_pcm16(frames, channels)


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()
