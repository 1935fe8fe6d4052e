"""
Pack renderer for MSU-1 PCM audio.

Modules are structured to separate configuration loading, attribute
resolution, source decoding, sample processing, and output encoding. See
`render_pack.py` for the primary CLI and `pcm_reader.py` for inspecting the
files it produces.
"""

from __future__ import annotations

# Fixed output format: 44.1 kHz, signed 16-bit little-endian, stereo.
SAMPLE_RATE = 44_100
CHANNELS = 2
SAMPLE_BYTES = 2
FRAME_BYTES = SAMPLE_BYTES * CHANNELS

MSU_MAGIC = b"MSU1"
HEADER_SIZE = len(MSU_MAGIC) + 4

__all__ = [
    "SAMPLE_RATE",
    "CHANNELS",
    "SAMPLE_BYTES",
    "FRAME_BYTES",
    "MSU_MAGIC",
    "HEADER_SIZE",
]
