from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from msupcm import resolver
from msupcm.config_schema import (
    ConfigError,
    CopyTrack,
    DirectTrack,
    ImportTrack,
    MixTrack,
    PackConfig,
    TrackAttributes,
    load_pack_config,
)
from msupcm.resolver import AttributeResolver, PackLoader, resolve_pack


def _pack(tmp_path: Path, tracks: list, **kwargs: object) -> PackConfig:
    return PackConfig(
        output_prefix=tmp_path / "out" / "pack",
        tracks=tracks,
        source_path=tmp_path / "pack.yaml",
        **kwargs,
    )


def _write(path: Path, mapping: object) -> Path:
    path.write_text(yaml.safe_dump(mapping))
    return path


def test_copy_inherits_attributes_and_overrides_title(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [
            DirectTrack(
                track_number=1,
                file=tmp_path / "song.flac",
                attributes=TrackAttributes(loop=500, trim_start=100, trim_end=9000, key="overworld", title="Orig"),
            ),
            CopyTrack(track_number=2, copy_of=1, attributes=TrackAttributes(title="Copy", pad_end=20)),
        ],
    )

    original, copy = resolve_pack(pack)

    assert original.title == "Orig"
    assert copy.track_number == 2
    assert copy.title == "Copy"
    assert copy.key == "overworld"
    assert (copy.loop_point, copy.trim_start, copy.trim_end) == (500, 100, 9000)
    assert copy.pad_start == 0
    assert copy.pad_end == 20
    assert copy.source_file == tmp_path / "song.flac"
    assert copy.source_description() == "song.flac"


def test_defaults_for_direct_track(tmp_path: Path) -> None:
    pack = _pack(tmp_path, [DirectTrack(track_number=1, file=tmp_path / "a.wav")])
    (track,) = resolve_pack(pack)
    assert track.trim_start == 0
    assert track.trim_end is None
    assert track.loop_point is None
    assert (track.pad_start, track.pad_end) == (0, 0)
    assert track.label == "#1"


def test_import_resolves_other_pack_and_pack_tiers(tmp_path: Path) -> None:
    _write(
        tmp_path / "other.yaml",
        {
            "output_prefix": "other",
            "rms_target": -20,
            "artist": "Other Artist",
            "album": "Other Album",
            "tracks": [{"track_number": 4, "file": "theme.ogg", "loop": 1234, "key": "theme"}],
        },
    )
    pack = _pack(
        tmp_path,
        [ImportTrack(track_number=7, import_file=tmp_path / "other.yaml", import_track=4)],
        amplification=-3.0,
        album="Main Album",
    )

    (track,) = resolve_pack(pack)

    assert track.loop_point == 1234
    assert track.key == "theme"
    assert track.source_file == (tmp_path / "theme.ogg").resolve()
    assert track.amplification is None
    assert track.rms_target is None
    assert track.pack_amplification == -3.0
    assert track.pack_rms_target == -20.0
    assert track.album == "Main Album"
    assert track.artist == "Other Artist"


def test_track_level_values_outrank_pack_fallbacks(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [
            DirectTrack(track_number=1, file=tmp_path / "a.wav", attributes=TrackAttributes(artist="Guest", rms_target=-18.0)),
            CopyTrack(track_number=2, copy_of=1),
        ],
        artist="Pack Artist",
        amplification=0.8,
    )
    _, copy = resolve_pack(pack)
    assert copy.artist == "Guest"
    assert copy.rms_target == -18.0
    assert copy.pack_amplification == 0.8


def test_mix_resolves_sub_tracks(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [
            DirectTrack(track_number=1, file=tmp_path / "drums.wav"),
            MixTrack(
                track_number=2,
                sub_tracks=(
                    DirectTrack(track_number=None, file=tmp_path / "bass.wav", attributes=TrackAttributes(trim_start=10)),
                    CopyTrack(track_number=None, copy_of=1),
                ),
                attributes=TrackAttributes(loop=50),
            ),
            CopyTrack(track_number=3, copy_of=2),
        ],
    )

    _, mix, copy_of_mix = resolve_pack(pack)

    assert mix.is_mix
    assert mix.loop_point == 50
    assert [sub.trim_start for sub in mix.sub_tracks] == [10, 0]
    assert mix.sub_tracks[0].loop_point is None
    assert mix.source_description() == "bass.wav, drums.wav"
    assert copy_of_mix.sub_tracks == mix.sub_tracks
    assert copy_of_mix.loop_point == 50


@pytest.mark.parametrize("mix_first", [False, True])
def test_numbered_sub_tracks_keep_their_own_sources(tmp_path: Path, mix_first: bool) -> None:
    direct = DirectTrack(track_number=1, file=tmp_path / "a.wav")
    mix = MixTrack(
        track_number=5,
        sub_tracks=(
            DirectTrack(track_number=1, file=tmp_path / "b.wav"),
            DirectTrack(track_number=None, file=tmp_path / "c.wav"),
        ),
    )
    tracks = [mix, direct] if mix_first else [direct, mix]

    resolved = {track.track_number: track for track in resolve_pack(_pack(tmp_path, tracks))}

    assert resolved[1].source_description() == "a.wav"
    assert resolved[5].source_description() == "b.wav, c.wav"


def test_sub_track_may_reuse_its_mix_number(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [MixTrack(track_number=5, sub_tracks=(DirectTrack(track_number=5, file=tmp_path / "b.wav"),))],
    )
    (mix,) = resolve_pack(pack)
    assert mix.source_description() == "b.wav"


def test_empty_track_artist_is_kept(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [DirectTrack(track_number=1, file=tmp_path / "a.wav", attributes=TrackAttributes(artist="", album=""))],
        artist="Composer",
        album="Soundtrack",
    )
    (track,) = resolve_pack(pack)
    assert track.artist == ""
    assert track.album == ""


def test_copy_cycle_is_reported(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [CopyTrack(track_number=1, copy_of=2), CopyTrack(track_number=2, copy_of=1)],
    )
    with pytest.raises(ConfigError, match="cycle"):
        resolve_pack(pack)


def test_self_referencing_mix_is_a_cycle(tmp_path: Path) -> None:
    pack = _pack(
        tmp_path,
        [MixTrack(track_number=5, sub_tracks=(CopyTrack(track_number=None, copy_of=5),))],
    )
    with pytest.raises(ConfigError, match="cycle"):
        resolve_pack(pack)


def test_missing_reference_is_config_error(tmp_path: Path) -> None:
    pack = _pack(tmp_path, [CopyTrack(track_number=1, copy_of=99)])
    with pytest.raises(ConfigError, match="#99"):
        resolve_pack(pack)


def test_import_cycle_across_packs(tmp_path: Path) -> None:
    _write(tmp_path / "a.yaml", {"output_prefix": "a", "tracks": [{"track_number": 1, "import_from": "b.yaml#1"}]})
    _write(tmp_path / "b.yaml", {"output_prefix": "b", "tracks": [{"track_number": 1, "import_from": "a.yaml#1"}]})

    loader = PackLoader()
    pack = loader.register(load_pack_config(tmp_path / "a.yaml"))
    with pytest.raises(ConfigError, match="a.yaml#1 -> b.yaml#1 -> a.yaml#1"):
        AttributeResolver(loader).resolve_pack(pack)


def test_pack_loader_parses_each_file_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write(
        tmp_path / "shared.yaml",
        {"output_prefix": "shared", "tracks": [{"track_number": 1, "file": "x.wav"}, {"track_number": 2, "file": "y.wav"}]},
    )
    calls: list[Path] = []
    real_loader = resolver.load_pack_config

    def counting_loader(path: Path):
        calls.append(path)
        return real_loader(path)

    monkeypatch.setattr(resolver, "load_pack_config", counting_loader)

    pack = _pack(
        tmp_path,
        [
            ImportTrack(track_number=1, import_file=tmp_path / "shared.yaml", import_track=1),
            ImportTrack(track_number=2, import_file=tmp_path / "sub" / ".." / "shared.yaml", import_track=2),
        ],
    )
    (tmp_path / "sub").mkdir()
    loader = PackLoader()
    first, second = resolve_pack(pack, loader)

    assert len(calls) == 1
    assert (tmp_path / "shared.yaml") in loader
    assert first.source_description() == "x.wav"
    assert second.source_description() == "y.wav"


def test_describe_is_flat(tmp_path: Path) -> None:
    pack = _pack(tmp_path, [DirectTrack(track_number=3, file=tmp_path / "a.wav", attributes=TrackAttributes(key="k"))])
    (track,) = resolve_pack(pack)
    description = track.describe()
    assert description["track_number"] == 3
    assert description["source"] == "a.wav"
    assert track.label == "#3 (k)"
