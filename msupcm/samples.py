"""
Sample codec for 16-bit signed little-endian stereo PCM.

Buffers are handled as NumPy arrays of shape `(samples, 2)`; a "sample" in
this package always means one stereo pair, matching the unit used for loop
points, trims, pads and fades.
"""

from __future__ import annotations

import math

import numpy as np

from . import CHANNELS, FRAME_BYTES, SAMPLE_BYTES

INT16_MIN = -(1 << 15)
INT16_MAX = (1 << 15) - 1

PCM_DTYPE = np.dtype("<i2")


def bytes_to_sample(data: bytes, index: int) -> int:
    """Return the 16-bit sample starting at byte `index`, or 0 past the end."""
    if index < 0 or index + SAMPLE_BYTES > len(data):
        return 0
    return int.from_bytes(data[index : index + SAMPLE_BYTES], "little", signed=True)


def sample_to_bytes(sample: int) -> bytes:
    """Encode `sample` as a little-endian byte pair, keeping the low 16 bits."""
    return (int(sample) & 0xFFFF).to_bytes(SAMPLE_BYTES, "little")


def bytes_to_samples(data: bytes) -> np.ndarray:
    if len(data) % FRAME_BYTES != 0:
        raise ValueError(
            f"PCM data length {len(data)} is not a multiple of {FRAME_BYTES} bytes."
        )
    return np.frombuffer(data, dtype=PCM_DTYPE).reshape(-1, CHANNELS).astype(np.int16)


def samples_to_bytes(samples: np.ndarray) -> bytes:
    array = np.asarray(samples)
    if array.ndim != 2 or array.shape[1] != CHANNELS:
        raise ValueError("Samples must have shape (samples, 2).")
    return array.astype(PCM_DTYPE, copy=False).tobytes()


def silence(count: int) -> np.ndarray:
    return np.zeros((max(0, int(count)), CHANNELS), dtype=np.int16)


def byte_count_to_sample_count(byte_count: int) -> int:
    return byte_count // FRAME_BYTES


def sample_count_to_byte_count(sample_count: int) -> int:
    return sample_count * FRAME_BYTES


def channel_rms(samples: np.ndarray) -> np.ndarray:
    """Per-channel RMS relative to full scale (32767)."""
    array = np.asarray(samples, dtype=np.float64)
    if array.shape[0] == 0:
        return np.zeros(CHANNELS, dtype=np.float64)
    return np.sqrt(np.mean(np.square(array), axis=0)) / INT16_MAX


def root_mean_square(samples: np.ndarray) -> float:
    """Linear RMS of a stereo buffer: the mean of the two channel values."""
    return float(np.mean(channel_rms(samples)))


def to_linear(value: float) -> float:
    """Negative values are decibels, nonnegative values are already linear."""
    if value >= 0:
        return float(value)
    return 10.0 ** (value / 20.0)


def to_decibels(value: float) -> float:
    """Inverse of `to_linear`: negative values are treated as decibels already."""
    if value < 0:
        return float(value)
    if value == 0:
        return -math.inf
    return 20.0 * math.log10(value)


__all__ = [
    "INT16_MIN",
    "INT16_MAX",
    "PCM_DTYPE",
    "bytes_to_sample",
    "sample_to_bytes",
    "bytes_to_samples",
    "samples_to_bytes",
    "silence",
    "byte_count_to_sample_count",
    "sample_count_to_byte_count",
    "channel_rms",
    "root_mean_square",
    "to_linear",
    "to_decibels",
]
