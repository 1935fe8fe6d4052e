"""
Output writers for MSU-1 packs: `.pcm` track files, the `.msu` marker, the
`.yml` track list and the JSON run summary.
"""

from __future__ import annotations

import hashlib
import json
import logging
import struct
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from . import MSU_MAGIC
from .config_schema import PackConfig
from .render_track import RenderedTrack, check_loop_point
from .resolver import ResolvedTrack
from .samples import samples_to_bytes

LOG = logging.getLogger("msupcm.pcm_writer")

HEADER = struct.Struct("<4sI")
MAX_LOOP_POINT = 0xFFFFFFFF


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def track_output_path(output_prefix: Path, track_number: int) -> Path:
    return Path(f"{output_prefix}-{track_number}.pcm")


def encode_header(loop_point: int) -> bytes:
    if not 0 <= loop_point <= MAX_LOOP_POINT:
        raise ValueError(f"Loop point {loop_point} does not fit in 32 bits.")
    return HEADER.pack(MSU_MAGIC, loop_point)


def encode_pcm(rendered: RenderedTrack, *, raw: bool = False) -> bytes:
    """Serialize a rendered track; raw output skips the header."""
    data = samples_to_bytes(rendered.samples)
    if raw:
        return data
    return encode_header(rendered.loop_point) + data


def write_pcm(
    path: Path,
    rendered: RenderedTrack,
    *,
    raw: bool = False,
    label: str = "track",
) -> Path:
    if not raw:
        # Loop point must index into the emitted (padded) buffer.
        check_loop_point(
            rendered.loop_point,
            pad_start=0,
            body_samples=rendered.sample_count,
            pad_end=0,
            label=label,
        )
    payload = encode_pcm(rendered, raw=raw)
    _ensure_parent(path)
    path.write_bytes(payload)
    LOG.info("Wrote %s (%d bytes, loop point %d)", path, len(payload), rendered.loop_point)
    return path


def write_marker(output_prefix: Path) -> Path:
    """Create the empty `.msu` file emulators use to recognize the pack."""
    path = Path(f"{output_prefix}.msu")
    _ensure_parent(path)
    path.touch()
    return path


def _dump_fields(fields: Mapping[str, Any], indent: int) -> str:
    text = yaml.safe_dump(dict(fields), sort_keys=False, allow_unicode=True, width=1_000_000)
    pad = " " * indent
    return "".join(f"{pad}{line}\n" for line in text.splitlines())


def _dump_key(key: str) -> str:
    """Mapping key with its colon, quoted by the YAML emitter when needed."""
    text = yaml.safe_dump({key: None}, allow_unicode=True, width=1_000_000).rstrip("\n")
    return text.removesuffix(" null")


def track_list_entry(pack: PackConfig, track: ResolvedTrack) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"name": track.title or track.source_description()}
    if track.artist is not None and track.artist != pack.artist:
        entry["artist"] = track.artist
    if track.album is not None and track.album != pack.album:
        entry["album"] = track.album
    return entry


def render_track_list(pack: PackConfig, tracks: Iterable[ResolvedTrack]) -> str:
    header: Dict[str, Any] = {}
    for name, value in (
        ("pack_name", pack.pack_name),
        ("pack_author", pack.pack_author),
        ("pack_version", pack.pack_version),
        ("msu_type", pack.msu_type),
        ("artist", pack.artist),
        ("album", pack.album),
    ):
        if value is not None:
            header[name] = value

    parts = [_dump_fields(header, 0) if header else "", "tracks:\n"]
    for track in tracks:
        key = _dump_key(track.key or f"track_{track.track_number}")
        parts.append(f"  {key} # {track.track_number}\n")
        parts.append(_dump_fields(track_list_entry(pack, track), 4))
    return "".join(parts)


def write_track_list(pack: PackConfig, tracks: Iterable[ResolvedTrack]) -> Path:
    path = Path(f"{pack.output_prefix}.yml")
    _ensure_parent(path)
    path.write_text(render_track_list(pack, tracks), encoding="utf-8")
    LOG.info("Track list written to %s", path)
    return path


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_run_summary(
    pack: PackConfig,
    summary: Mapping[str, Any],
    *,
    path: Optional[Path] = None,
) -> Path:
    path = path or Path(f"{pack.output_prefix}.json")
    _ensure_parent(path)
    path.write_text(json.dumps(summary, indent=2))
    LOG.info("Run summary written to %s", path)
    return path


__all__ = [
    "HEADER",
    "track_output_path",
    "encode_header",
    "encode_pcm",
    "write_pcm",
    "write_marker",
    "track_list_entry",
    "render_track_list",
    "write_track_list",
    "compute_sha256",
    "write_run_summary",
]
