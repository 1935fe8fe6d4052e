"""
Configuration schema and loader utilities for MSU-1 pack definitions.

The schema is intentionally lightweight (dataclasses + manual validation).
Packs are expressed as YAML or JSON (JSON is parsed through the YAML loader)
and may chain pack-level defaults from a parent file via `child_of`.

A track entry is one of four variants, discriminated by which fields are
present:

- `sub_tracks` -> `MixTrack`
- `copy_of` -> `CopyTrack` (another track in the same pack)
- `import_from: "other.yaml#12"` -> `ImportTrack` (a track in another pack)
- `file` -> `DirectTrack`

The legacy `inherit_from` key is accepted as a copy (plain number) or an
import (`file#number`). Unknown keys are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence, Union

import copy

import yaml


class ConfigError(ValueError):
    """Raised when a pack definition is missing data or references are broken."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


SAMPLE_COUNT_FIELDS = ("loop", "trim_start", "trim_end", "pad_start", "pad_end", "fade_in", "fade_out")
LEVEL_FIELDS = ("amplification", "rms_target")
TEXT_FIELDS = ("title", "key", "artist", "album")


@dataclass(slots=True, frozen=True)
class TrackAttributes:
    """Explicit per-track values; `None` means "inherit or use the default"."""

    loop: Optional[int] = None
    trim_start: Optional[int] = None
    trim_end: Optional[int] = None
    pad_start: Optional[int] = None
    pad_end: Optional[int] = None
    fade_in: Optional[int] = None
    fade_out: Optional[int] = None
    amplification: Optional[float] = None
    rms_target: Optional[float] = None
    title: Optional[str] = None
    key: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None

    def validate(self, label: str) -> None:
        for name in SAMPLE_COUNT_FIELDS:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigError(f"{label}: {name} must be >= 0.")
        if (
            self.trim_start is not None
            and self.trim_end is not None
            and self.trim_end < self.trim_start
        ):
            raise ConfigError(
                f"{label}: trim_end ({self.trim_end}) must not be less than trim_start ({self.trim_start})."
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(slots=True, frozen=True)
class DirectTrack:
    track_number: Optional[int]
    file: Path
    attributes: TrackAttributes = field(default_factory=TrackAttributes)


@dataclass(slots=True, frozen=True)
class CopyTrack:
    track_number: Optional[int]
    copy_of: int
    attributes: TrackAttributes = field(default_factory=TrackAttributes)


@dataclass(slots=True, frozen=True)
class ImportTrack:
    track_number: Optional[int]
    import_file: Path
    import_track: int
    attributes: TrackAttributes = field(default_factory=TrackAttributes)


@dataclass(slots=True, frozen=True)
class MixTrack:
    track_number: Optional[int]
    sub_tracks: tuple["TrackVariant", ...]
    attributes: TrackAttributes = field(default_factory=TrackAttributes)


TrackVariant = Union[DirectTrack, CopyTrack, ImportTrack, MixTrack]


def track_label(track: TrackVariant) -> str:
    if track.track_number is None:
        return "Sub-track"
    return f"Track #{track.track_number}"


@dataclass(slots=True)
class PackConfig:
    output_prefix: Path
    tracks: List[TrackVariant] = field(default_factory=list)
    amplification: Optional[float] = None
    rms_target: Optional[float] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    pack_name: Optional[str] = None
    pack_author: Optional[str] = None
    pack_version: Optional[int] = None
    msu_type: Optional[str] = None
    url: Optional[str] = None
    child_of: Optional[Path] = None
    source_path: Optional[Path] = None

    def validate(self) -> None:
        if not str(self.output_prefix):
            raise ConfigError("output_prefix cannot be empty.")
        if not self.tracks:
            raise ConfigError("At least one track entry is required.")
        seen: set[int] = set()
        for track in self.tracks:
            if track.track_number is None:
                raise ConfigError("Track entries must include 'track_number'.")
            if track.track_number in seen:
                raise ConfigError(f"Duplicate track_number {track.track_number}.")
            seen.add(track.track_number)

    @property
    def config_dir(self) -> Path:
        if self.source_path is None:
            return Path.cwd()
        return self.source_path.parent

    def find_track(self, track_number: int) -> Optional[TrackVariant]:
        for track in self.tracks:
            if track.track_number == track_number:
                return track
        return None

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-serializable summary (useful for logging)."""
        return {
            "source": str(self.source_path) if self.source_path else None,
            "output_prefix": str(self.output_prefix),
            "pack_name": self.pack_name,
            "msu_type": self.msu_type,
            "amplification": self.amplification,
            "rms_target": self.rms_target,
            "child_of": str(self.child_of) if self.child_of else None,
            "tracks": [track.track_number for track in self.tracks],
        }


# ---------------------------------------------------------------------------
# Loading utilities
# ---------------------------------------------------------------------------


def _load_yaml_file(path: Path) -> Mapping[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration '{path}' could not be parsed: {exc}") from exc
    if raw is None:
        raise ConfigError(f"Configuration file '{path}' is empty.")
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Configuration '{path}' must be a mapping at top level.")
    return raw


def _deep_update(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> None:
    for key, value in overlay.items():
        if (
            isinstance(value, Mapping)
            and key in base
            and isinstance(base[key], MutableMapping)
        ):
            _deep_update(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def _resolve_path(value: Any, base_dir: Path) -> Path:
    path = Path(str(value))
    return path if path.is_absolute() else (base_dir / path).resolve()


def _optional_int(entry: Mapping[str, Any], name: str, label: str) -> Optional[int]:
    value = entry.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label}: {name} must be an integer, got {value!r}.")
    return value


def _optional_float(entry: Mapping[str, Any], name: str, label: str) -> Optional[float]:
    value = entry.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label}: {name} must be a number, got {value!r}.")
    return float(value)


def _optional_str(entry: Mapping[str, Any], name: str) -> Optional[str]:
    value = entry.get(name)
    return None if value is None else str(value)


def _parse_attributes(entry: Mapping[str, Any], label: str) -> TrackAttributes:
    loop = _optional_int(entry, "loop", label)
    if loop is None:
        loop = _optional_int(entry, "loop_point", label)
    attributes = TrackAttributes(
        loop=loop,
        trim_start=_optional_int(entry, "trim_start", label),
        trim_end=_optional_int(entry, "trim_end", label),
        pad_start=_optional_int(entry, "pad_start", label),
        pad_end=_optional_int(entry, "pad_end", label),
        fade_in=_optional_int(entry, "fade_in", label),
        fade_out=_optional_int(entry, "fade_out", label),
        amplification=_optional_float(entry, "amplification", label),
        rms_target=_optional_float(entry, "rms_target", label),
        title=_optional_str(entry, "title"),
        key=_optional_str(entry, "key"),
        artist=_optional_str(entry, "artist"),
        album=_optional_str(entry, "album"),
    )
    attributes.validate(label)
    return attributes


def parse_import_reference(value: str, base_dir: Path, label: str) -> tuple[Path, int]:
    """Split `"other.yaml#12"` into a resolved path and a track number."""
    filename, sep, number = str(value).rpartition("#")
    if not sep or not filename:
        raise ConfigError(f"{label}: import_from must look like 'file#track_number', got {value!r}.")
    try:
        track_number = int(number)
    except ValueError as exc:
        raise ConfigError(f"{label}: import_from track number {number!r} is not an integer.") from exc
    return _resolve_path(filename, base_dir), track_number


def _parse_track(entry: Any, base_dir: Path) -> TrackVariant:
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Track entries must be mappings, got {entry!r}.")

    track_number = _optional_int(entry, "track_number", "Track")
    label = f"Track #{track_number}" if track_number is not None else "Sub-track"
    attributes = _parse_attributes(entry, label)

    if entry.get("sub_tracks") is not None:
        sub_entries = entry["sub_tracks"]
        if not isinstance(sub_entries, Sequence) or isinstance(sub_entries, str) or not sub_entries:
            raise ConfigError(f"{label}: sub_tracks must be a non-empty list.")
        return MixTrack(
            track_number=track_number,
            sub_tracks=tuple(_parse_track(sub, base_dir) for sub in sub_entries),
            attributes=attributes,
        )

    inherit_from = entry.get("inherit_from")
    copy_of = entry.get("copy_of")
    import_from = entry.get("import_from")
    if inherit_from is not None:
        if "#" in str(inherit_from):
            import_from = inherit_from
        else:
            copy_of = inherit_from

    if copy_of is not None:
        try:
            source_number = int(copy_of)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{label}: copy_of must be a track number, got {copy_of!r}.") from exc
        return CopyTrack(track_number=track_number, copy_of=source_number, attributes=attributes)

    if import_from is not None:
        import_file, import_track = parse_import_reference(import_from, base_dir, label)
        return ImportTrack(
            track_number=track_number,
            import_file=import_file,
            import_track=import_track,
            attributes=attributes,
        )

    if entry.get("file"):
        return DirectTrack(
            track_number=track_number,
            file=_resolve_path(entry["file"], base_dir),
            attributes=attributes,
        )

    raise ConfigError(
        f"{label}: entry needs one of 'file', 'copy_of', 'import_from' or 'sub_tracks'."
    )


def _load_parent_mapping(path: Path, chain: List[Path]) -> Dict[str, Any]:
    """Return the pack-level settings of `path`, merged with its own parents."""
    path = path.resolve()
    if path in chain:
        names = " -> ".join(str(p) for p in [*chain, path])
        raise ConfigError(f"child_of cycle detected: {names}")
    if not path.exists():
        raise ConfigError(f"child_of target '{path}' does not exist.")

    raw = dict(_load_yaml_file(path))
    raw.pop("tracks", None)
    if raw.get("output_prefix"):
        raw["output_prefix"] = str(_resolve_path(raw["output_prefix"], path.parent))

    parent = raw.pop("child_of", None)
    if not parent:
        return raw
    merged = _load_parent_mapping(_resolve_path(parent, path.parent), [*chain, path])
    _deep_update(merged, raw)
    return merged


def _parse_config_mapping(
    mapping: Mapping[str, Any], config_path: Optional[Path]
) -> PackConfig:
    config_dir = config_path.parent if config_path is not None else Path.cwd()

    output_prefix = mapping.get("output_prefix")
    if not output_prefix:
        raise ConfigError("Pack configuration must include an output_prefix.")

    child_of = mapping.get("child_of")
    tracks_cfg = mapping.get("tracks") or []
    if not isinstance(tracks_cfg, Sequence) or isinstance(tracks_cfg, str):
        raise ConfigError("'tracks' must be a list of track entries.")

    pack_version = mapping.get("pack_version")
    pack = PackConfig(
        output_prefix=_resolve_path(output_prefix, config_dir),
        tracks=[_parse_track(entry, config_dir) for entry in tracks_cfg],
        amplification=_optional_float(mapping, "amplification", "Pack"),
        rms_target=_optional_float(mapping, "rms_target", "Pack"),
        artist=_optional_str(mapping, "artist"),
        album=_optional_str(mapping, "album"),
        pack_name=_optional_str(mapping, "pack_name"),
        pack_author=_optional_str(mapping, "pack_author"),
        pack_version=int(pack_version) if pack_version is not None else None,
        msu_type=_optional_str(mapping, "msu_type") or _optional_str(mapping, "type"),
        url=_optional_str(mapping, "url"),
        child_of=_resolve_path(child_of, config_dir) if child_of else None,
        source_path=config_path,
    )

    pack.validate()
    return pack


def _apply_overrides(raw_mapping: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    # Support limited overrides (e.g. `"amplification": -3`, `"output_prefix": "out/pack"`)
    for dotted_key, value in overrides.items():
        parts = dotted_key.split(".")
        cursor: MutableMapping[str, Any] = raw_mapping
        for part in parts[:-1]:
            if part not in cursor or not isinstance(cursor[part], MutableMapping):
                cursor[part] = {}
            cursor = cursor[part]  # type: ignore[assignment]
        cursor[parts[-1]] = value


def load_pack_config(
    config_path: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PackConfig:
    """
    Load a pack definition, merging `child_of` defaults and inline overrides.

    Parameters
    ----------
    config_path:
        Path to the YAML or JSON pack file.
    overrides:
        Optional mapping of dotted key paths to values, applied after the
        `child_of` merge.
    """

    config_path = Path(config_path).resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file '{config_path}' does not exist.")

    raw_mapping = dict(_load_yaml_file(config_path))

    parent = raw_mapping.get("child_of")
    if parent:
        merged = _load_parent_mapping(_resolve_path(parent, config_path.parent), [config_path])
        _deep_update(merged, raw_mapping)
        raw_mapping = merged

    if overrides:
        _apply_overrides(raw_mapping, overrides)

    return _parse_config_mapping(raw_mapping, config_path)


__all__ = [
    "ConfigError",
    "TrackAttributes",
    "DirectTrack",
    "CopyTrack",
    "ImportTrack",
    "MixTrack",
    "TrackVariant",
    "PackConfig",
    "track_label",
    "parse_import_reference",
    "load_pack_config",
]
