"""
Track-level rendering for MSU-1 packs.

`render_track` covers source loading (decode or sub-track mixing), trimming,
loop-point-relative reordering, level processing and padding. Every stage
returns a new buffer; the input arrays are never modified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence
from pathlib import Path

import numpy as np

from . import CHANNELS
from .gain import process_levels
from .resolver import ResolvedTrack
from .samples import silence

LOG = logging.getLogger("msupcm.track")


class FormatViolationError(ValueError):
    """Raised when a loop point would fall outside the rendered audio."""


class SourceDecoder(Protocol):
    def decode(self, source: Path) -> np.ndarray: ...


@dataclass(slots=True)
class RenderedTrack:
    samples: np.ndarray
    loop_point: int
    body_samples: int
    amplification: float
    padded: bool = True

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])


def trim_samples(samples: np.ndarray, start: int, end: Optional[int] = None) -> np.ndarray:
    """Return `samples[start:end]`; an `end` of None keeps everything to the end."""
    length = samples.shape[0]
    if end is not None and end > length:
        LOG.warning("Trim end %d is past the end of the source (%d samples).", end, length)
    return samples[start:end].copy()


def arrange_loop(
    samples: np.ndarray,
    *,
    loop_point: Optional[int],
    trim_start: int = 0,
    trim_end: Optional[int] = None,
    pad_start: int = 0,
) -> tuple[np.ndarray, int]:
    """
    Trim `samples` and compute the loop point of the padded result.

    When the loop point lies before `trim_start`, the section
    `[loop_point, trim_start)` is moved after `[trim_start, trim_end)` so the
    whole buffer loops from its first sample.
    """
    body = trim_samples(samples, trim_start, trim_end)
    if loop_point is None:
        return body, pad_start
    if loop_point >= trim_start:
        return body, loop_point - trim_start + pad_start
    tail = trim_samples(samples, loop_point, trim_start)
    return np.concatenate([body, tail], axis=0), pad_start


def check_loop_point(
    loop_point: int,
    *,
    pad_start: int,
    body_samples: int,
    pad_end: int,
    label: str = "track",
) -> None:
    total = pad_start + body_samples + pad_end
    if loop_point < 0 or loop_point >= total:
        raise FormatViolationError(
            f"Track {label}: loop point {loop_point} is at or beyond the last sample "
            f"({total} samples). The resulting file would crash emulators."
        )


def check_static_loop_bounds(track: ResolvedTrack) -> None:
    """Reject loop points that are out of range before any audio is decoded."""
    loop = track.loop_point
    if loop is None or track.trim_end is None or loop < track.trim_start:
        return
    if loop >= track.trim_end + track.pad_end:
        raise FormatViolationError(
            f"Track {track.label}: loop point {loop} is at or beyond trim_end "
            f"{track.trim_end} plus pad_end {track.pad_end}."
        )


def mix_buffers(buffers: Sequence[np.ndarray]) -> np.ndarray:
    """
    Sum buffers sample by sample into a wide integer buffer as long as the
    longest input; shorter inputs contribute silence past their end.
    """
    if not buffers:
        raise ValueError("At least one buffer is required for mixing.")
    length = max(buffer.shape[0] for buffer in buffers)
    mixed = np.zeros((length, CHANNELS), dtype=np.int32)
    for buffer in buffers:
        mixed[: buffer.shape[0]] += buffer.astype(np.int32)
    return mixed


def pad_samples(samples: np.ndarray, pad_start: int = 0, pad_end: int = 0) -> np.ndarray:
    if not pad_start and not pad_end:
        return samples.copy()
    return np.concatenate(
        [silence(pad_start), samples.astype(np.int16, copy=False), silence(pad_end)],
        axis=0,
    )


def render_samples(
    track: ResolvedTrack,
    source: np.ndarray,
    *,
    pad: bool = True,
) -> RenderedTrack:
    """Render already-loaded source samples according to `track`."""
    body, loop_point = arrange_loop(
        source,
        loop_point=track.loop_point,
        trim_start=track.trim_start,
        trim_end=track.trim_end,
        pad_start=track.pad_start,
    )
    check_loop_point(
        loop_point,
        pad_start=track.pad_start,
        body_samples=body.shape[0],
        pad_end=track.pad_end,
        label=track.label,
    )
    processed, amplification = process_levels(body, track)
    samples = pad_samples(processed, track.pad_start, track.pad_end) if pad else processed
    return RenderedTrack(
        samples=samples,
        loop_point=loop_point,
        body_samples=int(body.shape[0]),
        amplification=amplification,
        padded=pad,
    )


def load_source(track: ResolvedTrack, decoder: SourceDecoder) -> np.ndarray:
    """Decode the track's file, or render and mix its sub-tracks."""
    if track.sub_tracks:
        LOG.info("Mixing %d sub-tracks for %s", len(track.sub_tracks), track.label)
        rendered = [render_track(sub, decoder).samples for sub in track.sub_tracks]
        return mix_buffers(rendered)
    if track.source_file is None:
        raise ValueError(f"Track {track.label} has no audio source.")
    return decoder.decode(track.source_file)


def render_track(
    track: ResolvedTrack,
    decoder: SourceDecoder,
    *,
    pad: bool = True,
) -> RenderedTrack:
    """
    Render a single resolved track.

    Pipeline steps:
    - Static loop bounds check.
    - Source decode, or recursive rendering and mixing of sub-tracks.
    - Trim and loop reordering, then the loop bounds check on real lengths.
    - Amplification and fades in one pass, then padding.
    """
    check_static_loop_bounds(track)
    source = load_source(track, decoder)
    rendered = render_samples(track, source, pad=pad)
    LOG.debug(
        "Rendered %s | samples=%d loop=%d",
        track.label,
        rendered.sample_count,
        rendered.loop_point,
    )
    return rendered


__all__ = [
    "FormatViolationError",
    "RenderedTrack",
    "SourceDecoder",
    "trim_samples",
    "arrange_loop",
    "check_loop_point",
    "check_static_loop_bounds",
    "mix_buffers",
    "pad_samples",
    "render_samples",
    "load_source",
    "render_track",
]
