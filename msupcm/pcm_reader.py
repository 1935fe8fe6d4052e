"""
Reader for MSU-1 PCM files, as used by playback tooling.

Parses the `MSU1` header, streams audio with looping back to the loop point
at end of file, and extracts the audio around the loop seam so it can be
checked for clicks in an external editor.

Usage:
    python -m msupcm.pcm_reader track-2.pcm --write-loop seam.raw
"""

from __future__ import annotations

import argparse
import logging
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from . import FRAME_BYTES, HEADER_SIZE, MSU_MAGIC, SAMPLE_RATE

LOG = logging.getLogger("msupcm.pcm_reader")

LOOP_POINT = struct.Struct("<I")

# Track keys that play once and stop instead of looping.
NON_LOOPING_KEYS = frozenset(
    {
        "zelda_title",
        "mirror",
        "pedestal_pull",
        "boss_victory",
        "ganon_reveal",
        "epilogue",
        "zelda_credits",
        "smz3_credits",
        "samus_fanfare",
        "item_acquired",
        "death_cry",
        "metroid_credits",
    }
)


class MagicMismatchError(ValueError):
    """Raised when a file does not start with the MSU-1 magic number."""


@dataclass(slots=True)
class PcmHeader:
    loop_point: int
    sample_count: int

    @property
    def loop_offset(self) -> int:
        return sample_offset(self.loop_point)

    @property
    def duration(self) -> float:
        return self.sample_count / SAMPLE_RATE


def sample_offset(sample: int) -> int:
    """Byte offset of `sample` in a file, accounting for the header."""
    return HEADER_SIZE + sample * FRAME_BYTES


def is_looping_key(key: Optional[str]) -> bool:
    return key not in NON_LOOPING_KEYS


def read_header(handle: BinaryIO) -> PcmHeader:
    """Read the header at the current position; the handle is left just past it."""
    magic = handle.read(len(MSU_MAGIC))
    if magic != MSU_MAGIC:
        raise MagicMismatchError(
            f"File is missing the {MSU_MAGIC.decode()!r} magic number: {magic!r}"
        )
    raw_loop = handle.read(LOOP_POINT.size)
    if len(raw_loop) != LOOP_POINT.size:
        raise MagicMismatchError("File header is truncated before the loop point.")
    (loop_point,) = LOOP_POINT.unpack(raw_loop)

    position = handle.tell()
    handle.seek(0, 2)
    data_bytes = handle.tell() - HEADER_SIZE
    handle.seek(position)
    return PcmHeader(loop_point=loop_point, sample_count=data_bytes // FRAME_BYTES)


def open_header(path: Path) -> PcmHeader:
    with Path(path).open("rb") as handle:
        return read_header(handle)


def iter_playback(
    path: Path,
    *,
    chunk_samples: int = 4096,
    looping: Optional[bool] = None,
    key: Optional[str] = None,
    max_loops: Optional[int] = None,
) -> Iterator[bytes]:
    """
    Yield PCM chunks from `path` the way playback hardware consumes them.

    On reaching end of file a looping track seeks back to its loop point and
    continues; `max_loops` bounds the number of seeks (None loops forever).
    When `looping` is None it is decided from the track `key`: title screens,
    fanfares and the like play once.
    """
    if looping is None:
        looping = is_looping_key(key)
    if chunk_samples <= 0:
        raise ValueError("chunk_samples must be positive.")
    chunk_bytes = chunk_samples * FRAME_BYTES
    loops = 0
    with Path(path).open("rb") as handle:
        header = read_header(handle)
        if header.loop_point >= header.sample_count:
            raise ValueError(
                f"Loop point {header.loop_point} is beyond the end of {path} ({header.sample_count} samples)."
            )
        end = sample_offset(header.sample_count)
        while True:
            data = handle.read(min(chunk_bytes, end - handle.tell()))
            if data:
                yield data
            if handle.tell() < end:
                continue
            if not looping or (max_loops is not None and loops >= max_loops):
                return
            LOG.debug("Looped %s back to sample %d", path, header.loop_point)
            handle.seek(header.loop_offset)
            loops += 1


def extract_loop_window(path: Path, window_samples: int = SAMPLE_RATE // 4) -> bytes:
    """
    Return the last `window_samples` before end of file followed by the first
    `window_samples` after the loop point; the seam sits exactly in the middle.
    """
    if window_samples <= 0:
        raise ValueError("window_samples must be positive.")
    with Path(path).open("rb") as handle:
        header = read_header(handle)
        before = min(window_samples, header.sample_count)
        handle.seek(sample_offset(header.sample_count - before))
        tail = handle.read(before * FRAME_BYTES)
        handle.seek(header.loop_offset)
        head = handle.read(window_samples * FRAME_BYTES)
    return tail + head


def write_loop_window(path: Path, output_path: Path, window_samples: int = SAMPLE_RATE // 4) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(extract_loop_window(path, window_samples))
    return output_path


def write_playback(
    path: Path,
    output_path: Path,
    *,
    key: Optional[str] = None,
    max_loops: int = 1,
) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("wb") as handle:
        for chunk in iter_playback(path, key=key, max_loops=max_loops):
            handle.write(chunk)
    return output_path


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Inspect MSU-1 PCM files.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("files", nargs="+", type=Path, help="PCM files to inspect.")
    parser.add_argument(
        "--write-loop",
        type=Path,
        dest="write_loop",
        help="Write the raw audio around the loop seam of the (single) input file here.",
    )
    parser.add_argument(
        "--window",
        type=int,
        default=SAMPLE_RATE // 4,
        help="Samples taken on each side of the loop seam.",
    )
    parser.add_argument(
        "--key",
        help="Track key of the (single) input file; decides whether playback loops.",
    )
    parser.add_argument(
        "--playback",
        type=Path,
        help="Write the raw audio stream a player would produce for the (single) input file here.",
    )
    parser.add_argument(
        "--loops",
        type=int,
        default=1,
        help="Number of times a looping track jumps back to its loop point in --playback output.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    if (args.write_loop or args.playback or args.key) and len(args.files) != 1:
        parser.error("--write-loop, --playback and --key take exactly one input file.")

    status = 0
    for path in args.files:
        try:
            header = open_header(path)
        except (OSError, MagicMismatchError) as exc:
            LOG.error("%s: %s", path, exc)
            status = 1
            continue
        looping = is_looping_key(args.key)
        print(
            f"{path}: loop point {header.loop_point}, "
            f"{header.sample_count} samples ({header.duration:.2f}s), "
            f"{'loops' if looping else 'plays once'}"
        )
        if args.write_loop:
            write_loop_window(path, args.write_loop, args.window)
            LOG.info("Loop seam written to %s", args.write_loop)
        if args.playback:
            write_playback(path, args.playback, key=args.key, max_loops=args.loops)
            LOG.info("Playback stream written to %s", args.playback)
    return status


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
