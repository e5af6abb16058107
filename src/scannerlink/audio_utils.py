"""Audio helpers."""

from __future__ import annotations

import io
import wave
from typing import Tuple

import numpy as np

WAV_HEADER_SIZE = 44
BYTES_PER_SAMPLE = 2


def pcm16_rms(buf: bytes) -> float:
    """RMS amplitude of signed 16-bit little-endian PCM."""
    usable = len(buf) - (len(buf) % BYTES_PER_SAMPLE)
    if usable <= 0:
        return 0.0
    samples = np.frombuffer(buf[:usable], dtype="<i2").astype(np.float64)
    return float(np.sqrt(np.mean(samples**2)))


def bytes_per_second(sample_rate: int, channels: int) -> int:
    return sample_rate * channels * BYTES_PER_SAMPLE


def pcm_duration_seconds(byte_count: int, sample_rate: int, channels: int) -> float:
    rate = bytes_per_second(sample_rate, channels)
    if rate <= 0:
        raise ValueError("sample_rate and channels must be > 0.")
    return byte_count / rate


def wrap_wav(pcm: bytes, sample_rate: int, channels: int) -> bytes:
    block_align = channels * BYTES_PER_SAMPLE
    usable = len(pcm) - (len(pcm) % block_align)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as handle:
        handle.setnchannels(channels)
        handle.setsampwidth(BYTES_PER_SAMPLE)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm[:usable])
    return buf.getvalue()


def read_wav(payload: bytes) -> Tuple[int, int, bytes]:
    """Return (sample_rate, channels, pcm) from a WAV byte string."""
    with wave.open(io.BytesIO(payload), "rb") as handle:
        if handle.getsampwidth() != BYTES_PER_SAMPLE:
            raise ValueError("Only 16-bit PCM is supported.")
        rate = handle.getframerate()
        channels = handle.getnchannels()
        pcm = handle.readframes(handle.getnframes())
    return rate, channels, pcm
