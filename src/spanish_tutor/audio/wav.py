"""16-bit PCM accumulation and canonical WAV encoding."""

from __future__ import annotations

import struct

import numpy as np

from spanish_tutor.errors import WavSizingError

WAV_HEADER_SIZE = 44
WAV_MIME_TYPE = "audio/wav"
BYTES_PER_SAMPLE = 2


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp float samples to [-1, 1] and scale them to little-endian int16."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32).reshape(-1), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2")


def wav_header(sample_count: int, *, sample_rate: int = 16_000, channels: int = 1) -> bytes:
    data_size = sample_count * BYTES_PER_SAMPLE
    byte_rate = sample_rate * channels * BYTES_PER_SAMPLE
    block_align = channels * BYTES_PER_SAMPLE
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        BYTES_PER_SAMPLE * 8,
        b"data",
        data_size,
    )


def encode_wav(pcm: np.ndarray, *, sample_rate: int = 16_000) -> bytes:
    """Encode mono int16 samples as a WAV file, verifying the final size."""
    samples = np.asarray(pcm, dtype="<i2").reshape(-1)
    payload = wav_header(len(samples), sample_rate=sample_rate) + samples.tobytes()
    expected = WAV_HEADER_SIZE + BYTES_PER_SAMPLE * len(samples)
    if len(payload) != expected:
        raise WavSizingError(f"WAV payload is {len(payload)} bytes, expected {expected} for {len(samples)} samples")
    return payload


class PcmAccumulator:
    """Collects float sample blocks from a processing graph as int16 PCM."""

    def __init__(self) -> None:
        self._blocks: list[np.ndarray] = []
        self._sample_count = 0

    @property
    def sample_count(self) -> int:
        return self._sample_count

    def append(self, samples: np.ndarray) -> None:
        block = float_to_pcm16(samples)
        if block.size:
            self._blocks.append(block)
            self._sample_count += int(block.size)

    def to_pcm(self) -> np.ndarray:
        if not self._blocks:
            return np.zeros(0, dtype="<i2")
        return np.concatenate(self._blocks)

    def clear(self) -> None:
        self._blocks.clear()
        self._sample_count = 0
