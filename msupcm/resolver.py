"""
Pack loading and attribute resolution.

`PackLoader` owns the filename-keyed pack cache for one pipeline run, so a
pack imported by several tracks is parsed once. `AttributeResolver` walks the
copy/import delegation graph eagerly and produces one flat `ResolvedTrack`
record per track, memoized per `(pack file, track number)`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config_schema import (
    ConfigError,
    CopyTrack,
    DirectTrack,
    ImportTrack,
    MixTrack,
    PackConfig,
    TrackVariant,
    load_pack_config,
    track_label,
)

LOG = logging.getLogger("msupcm.resolver")

TrackKey = Tuple[Optional[Path], int]


@dataclass(slots=True, frozen=True)
class ResolvedTrack:
    """Concrete rendering attributes for one track."""

    track_number: Optional[int]
    pack_path: Optional[Path]
    key: Optional[str] = None
    title: Optional[str] = None
    loop_point: Optional[int] = None
    trim_start: int = 0
    trim_end: Optional[int] = None
    pad_start: int = 0
    pad_end: int = 0
    fade_in: Optional[int] = None
    fade_out: Optional[int] = None
    amplification: Optional[float] = None
    rms_target: Optional[float] = None
    pack_amplification: Optional[float] = None
    pack_rms_target: Optional[float] = None
    track_artist: Optional[str] = None
    track_album: Optional[str] = None
    pack_artist: Optional[str] = None
    pack_album: Optional[str] = None
    source_file: Optional[Path] = None
    sub_tracks: Tuple["ResolvedTrack", ...] = ()

    @property
    def artist(self) -> Optional[str]:
        return _first(self.track_artist, self.pack_artist)

    @property
    def album(self) -> Optional[str]:
        return _first(self.track_album, self.pack_album)

    @property
    def is_mix(self) -> bool:
        return bool(self.sub_tracks)

    @property
    def label(self) -> str:
        number = "sub-track" if self.track_number is None else f"#{self.track_number}"
        return f"{number} ({self.key})" if self.key else number

    def source_description(self) -> str:
        if self.sub_tracks:
            return ", ".join(sub.source_description() for sub in self.sub_tracks)
        return self.source_file.name if self.source_file else ""

    def describe(self) -> Dict[str, Any]:
        return {
            "track_number": self.track_number,
            "key": self.key,
            "title": self.title,
            "source": self.source_description(),
            "loop_point": self.loop_point,
            "trim_start": self.trim_start,
            "trim_end": self.trim_end,
            "pad_start": self.pad_start,
            "pad_end": self.pad_end,
            "fade_in": self.fade_in,
            "fade_out": self.fade_out,
        }


class PackLoader:
    """Loads pack files once per run, keyed by their resolved path."""

    def __init__(self) -> None:
        self._cache: Dict[Path, PackConfig] = {}
        self._lock = threading.Lock()

    def __contains__(self, path: object) -> bool:
        return isinstance(path, Path) and path.resolve() in self._cache

    def register(self, pack: PackConfig) -> PackConfig:
        """Seed the cache with an already-parsed pack (e.g. one with CLI overrides)."""
        if pack.source_path is not None:
            with self._lock:
                self._cache.setdefault(pack.source_path.resolve(), pack)
        return pack

    def load(self, path: Path) -> PackConfig:
        resolved = Path(path).resolve()
        with self._lock:
            cached = self._cache.get(resolved)
            if cached is not None:
                return cached
            LOG.debug("Loading pack %s", resolved)
            pack = load_pack_config(resolved)
            self._cache[resolved] = pack
            return pack


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


class AttributeResolver:
    """
    Resolves tracks into `ResolvedTrack` records.

    Track-scoped values come from the track itself, then from the track it
    delegates to. Pack-scoped values (artist, album, amplification,
    rms_target) additionally fall back to the owning pack and then to the
    delegated track's pack; the track tier and the pack tier are kept apart so
    that track-level RMS targets outrank pack-level amplification.
    """

    def __init__(self, loader: PackLoader) -> None:
        self._loader = loader
        self._memo: Dict[TrackKey, ResolvedTrack] = {}
        self._stack: List[TrackKey] = []

    def resolve_pack(self, pack: PackConfig) -> List[ResolvedTrack]:
        return [self.resolve(pack, track) for track in pack.tracks]

    def resolve(self, pack: PackConfig, track: TrackVariant) -> ResolvedTrack:
        key: Optional[TrackKey] = None
        if track.track_number is not None:
            key = (pack.source_path, track.track_number)
            cached = self._memo.get(key)
            if cached is not None:
                return cached
            if key in self._stack:
                raise ConfigError(f"Delegation cycle detected: {self._format_cycle(key)}")
            self._stack.append(key)
        try:
            resolved = self._resolve_uncached(pack, track)
        finally:
            if key is not None:
                self._stack.pop()
        if key is not None:
            self._memo[key] = resolved
        return resolved

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _format_cycle(self, key: TrackKey) -> str:
        start = self._stack.index(key)
        chain = [*self._stack[start:], key]
        return " -> ".join(
            f"{path.name if path else '<pack>'}#{number}" for path, number in chain
        )

    def _delegate(self, pack: PackConfig, track: TrackVariant) -> Tuple[PackConfig, TrackVariant]:
        if isinstance(track, CopyTrack):
            target_pack = pack
            target_number = track.copy_of
        elif isinstance(track, ImportTrack):
            target_pack = self._loader.load(track.import_file)
            target_number = track.import_track
        else:  # pragma: no cover - guarded by caller
            raise TypeError(f"{type(track).__name__} does not delegate.")

        target = target_pack.find_track(target_number)
        if target is None:
            where = target_pack.source_path or "this pack"
            raise ConfigError(
                f"{track_label(track)}: referenced track #{target_number} not found in {where}."
            )
        return target_pack, target

    def _resolve_uncached(self, pack: PackConfig, track: TrackVariant) -> ResolvedTrack:
        attrs = track.attributes
        parent: Optional[ResolvedTrack] = None
        source_file: Optional[Path] = None
        sub_tracks: Tuple[ResolvedTrack, ...] = ()

        if isinstance(track, (CopyTrack, ImportTrack)):
            parent_pack, parent_track = self._delegate(pack, track)
            parent = self.resolve(parent_pack, parent_track)
            source_file = parent.source_file
            sub_tracks = parent.sub_tracks
        elif isinstance(track, MixTrack):
            # Sub-track numbers are labels only; they never share the top-level memo.
            sub_tracks = tuple(self._resolve_uncached(pack, sub) for sub in track.sub_tracks)
        elif isinstance(track, DirectTrack):
            source_file = track.file
        else:
            raise ConfigError(f"Unsupported track variant {type(track).__name__}.")

        def inherited(name: str) -> Any:
            return getattr(parent, name) if parent is not None else None

        resolved = ResolvedTrack(
            track_number=track.track_number,
            pack_path=pack.source_path,
            key=_first(attrs.key, inherited("key")),
            title=_first(attrs.title, inherited("title")),
            loop_point=_first(attrs.loop, inherited("loop_point")),
            trim_start=_first(attrs.trim_start, inherited("trim_start"), 0),
            trim_end=_first(attrs.trim_end, inherited("trim_end")),
            pad_start=_first(attrs.pad_start, inherited("pad_start"), 0),
            pad_end=_first(attrs.pad_end, inherited("pad_end"), 0),
            fade_in=_first(attrs.fade_in, inherited("fade_in")),
            fade_out=_first(attrs.fade_out, inherited("fade_out")),
            amplification=_first(attrs.amplification, inherited("amplification")),
            rms_target=_first(attrs.rms_target, inherited("rms_target")),
            pack_amplification=_first(pack.amplification, inherited("pack_amplification")),
            pack_rms_target=_first(pack.rms_target, inherited("pack_rms_target")),
            track_artist=_first(attrs.artist, inherited("track_artist")),
            track_album=_first(attrs.album, inherited("track_album")),
            pack_artist=_first(pack.artist, inherited("pack_artist")),
            pack_album=_first(pack.album, inherited("pack_album")),
            source_file=source_file,
            sub_tracks=sub_tracks,
        )
        if resolved.trim_end is not None and resolved.trim_end < resolved.trim_start:
            raise ConfigError(
                f"{track_label(track)}: resolved trim_end ({resolved.trim_end}) "
                f"is before trim_start ({resolved.trim_start})."
            )
        return resolved


def resolve_pack(pack: PackConfig, loader: Optional[PackLoader] = None) -> List[ResolvedTrack]:
    """Resolve every track in `pack`, loading imported packs through `loader`."""
    loader = loader or PackLoader()
    loader.register(pack)
    return AttributeResolver(loader).resolve_pack(pack)


__all__ = [
    "ResolvedTrack",
    "PackLoader",
    "AttributeResolver",
    "resolve_pack",
]
