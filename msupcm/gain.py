"""
Level processing for rendered tracks: amplification, RMS normalization and
linear fades.

Gain and fades are computed per sample in floating point and narrowed back to
16-bit exactly once, in `apply_gain`.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .resolver import ResolvedTrack
from .samples import INT16_MAX, INT16_MIN, root_mean_square, to_linear

LOG = logging.getLogger("msupcm.gain")


def _rms_factor(samples: np.ndarray, target: float, label: str) -> float:
    current = root_mean_square(samples)
    if current <= 0.0:
        LOG.warning("Track %s is silent; skipping RMS normalization.", label)
        return 1.0
    return to_linear(target) / current


def compute_amplification(samples: np.ndarray, track: ResolvedTrack) -> float:
    """
    Return the linear gain for `samples`, choosing the first available value:

    - track amplification
    - track RMS target
    - pack amplification
    - pack RMS target
    - 1.0 (unchanged)
    """
    if track.amplification is not None:
        return to_linear(track.amplification)
    if track.rms_target is not None:
        return _rms_factor(samples, track.rms_target, track.label)
    if track.pack_amplification is not None:
        return to_linear(track.pack_amplification)
    if track.pack_rms_target is not None:
        return _rms_factor(samples, track.pack_rms_target, track.label)
    return 1.0


def fade_envelope(fade_in: Optional[int], fade_out: Optional[int], total: int) -> np.ndarray:
    """
    Per-sample multipliers for the given fades over `total` samples.

    Inside the first `fade_in` samples the multiplier is `i / fade_in`; past
    `total - fade_out` it is `(total - i) / fade_out`. Overlapping fades
    multiply.
    """
    index = np.arange(total, dtype=np.float64)
    envelope = np.ones(total, dtype=np.float64)
    if fade_in:
        head = index < fade_in
        envelope[head] *= index[head] / fade_in
    if fade_out:
        tail = index > total - fade_out
        envelope[tail] *= (total - index[tail]) / fade_out
    return envelope


def apply_gain(
    samples: np.ndarray,
    amplification: float = 1.0,
    *,
    fade_in: Optional[int] = None,
    fade_out: Optional[int] = None,
) -> np.ndarray:
    """Return a new int16 buffer with gain and fades applied, clamped to 16 bits."""
    array = np.asarray(samples)
    envelope = fade_envelope(fade_in, fade_out, array.shape[0]) * amplification
    scaled = np.trunc(array.astype(np.float64) * envelope[:, None])
    clipped = np.count_nonzero((scaled > INT16_MAX) | (scaled < INT16_MIN))
    if clipped:
        LOG.warning("Clamped %d sample values outside the 16-bit range.", clipped)
    return np.clip(scaled, INT16_MIN, INT16_MAX).astype(np.int16)


def process_levels(samples: np.ndarray, track: ResolvedTrack) -> tuple[np.ndarray, float]:
    """Apply the track's amplification and fades; returns the buffer and the gain used."""
    amplification = compute_amplification(samples, track)
    LOG.info("Track %s amplification: %.4f", track.label, amplification)
    processed = apply_gain(
        samples,
        amplification,
        fade_in=track.fade_in,
        fade_out=track.fade_out,
    )
    return processed, amplification


__all__ = [
    "compute_amplification",
    "fade_envelope",
    "apply_gain",
    "process_levels",
]
