from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
import yaml

from msupcm import render_pack
from msupcm.config_schema import ConfigError
from msupcm.decoder import DecodeError
from msupcm.pcm_reader import open_header
from msupcm.render_track import FormatViolationError


def _ramp(count: int) -> np.ndarray:
    index = np.arange(count)
    return np.stack([index, -index], axis=1).astype(np.int16)


class FakeDecoder:
    def __init__(self, sources: dict[str, np.ndarray], failing: tuple[str, ...] = ()) -> None:
        self.sources = sources
        self.failing = failing

    def decode(self, source: Path) -> np.ndarray:
        name = Path(source).name
        if name in self.failing:
            raise DecodeError(f"Decoder failed for {source}")
        return self.sources[name]


SOURCES = {"a.wav": _ramp(1200), "b.wav": np.full((600, 2), 10, dtype=np.int16)}


def _write_config(tmp_path: Path, tracks: list[dict]) -> Path:
    config = {
        "output_prefix": "out/pack",
        "pack_name": "Test Pack",
        "artist": "Composer",
        "tracks": tracks,
    }
    path = tmp_path / "pack.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False))
    return path


@pytest.fixture()
def pack_config(tmp_path: Path) -> Path:
    return _write_config(
        tmp_path,
        [
            {"track_number": 1, "key": "intro", "title": "Intro", "file": "a.wav", "loop": 500, "trim_end": 1000},
            {"track_number": 2, "key": "reprise", "copy_of": 1, "trim_start": 300, "loop": 100},
            {"track_number": 3, "sub_tracks": [{"file": "a.wav"}, {"file": "b.wav"}]},
        ],
    )


def test_render_pack_writes_every_output(pack_config: Path, tmp_path: Path) -> None:
    summaries = render_pack.render_pack(pack_config, decoder=FakeDecoder(SOURCES))

    out = tmp_path / "out"
    assert (out / "pack.msu").exists()
    assert [s.track_number for s in summaries] == [1, 2, 3]
    assert all(s.ok for s in summaries)

    first = open_header(out / "pack-1.pcm")
    assert (first.loop_point, first.sample_count) == (500, 1000)
    assert (out / "pack-1.pcm").stat().st_size == 8 + 1000 * 4

    reprise = open_header(out / "pack-2.pcm")
    assert (reprise.loop_point, reprise.sample_count) == (0, 900)

    mixed = open_header(out / "pack-3.pcm")
    assert (mixed.loop_point, mixed.sample_count) == (0, 1200)

    track_list = yaml.safe_load((out / "pack.yml").read_text())
    assert track_list["pack_name"] == "Test Pack"
    assert list(track_list["tracks"]) == ["intro", "reprise", "track_3"]

    run = json.loads((out / "pack.json").read_text())
    assert run["failed"] == []
    assert [entry["samples"] for entry in run["tracks"]] == [1000, 900, 1200]
    assert run["tracks"][0]["checksum"] == summaries[0].checksum


def test_single_track_run_skips_pack_files(pack_config: Path, tmp_path: Path) -> None:
    summaries = render_pack.render_pack(pack_config, track_number=2, decoder=FakeDecoder(SOURCES))

    out = tmp_path / "out"
    assert [s.track_number for s in summaries] == [2]
    assert (out / "pack-2.pcm").exists()
    assert not (out / "pack-1.pcm").exists()
    assert not (out / "pack.msu").exists()
    assert not (out / "pack.yml").exists()


def test_raw_run_writes_bare_samples(pack_config: Path, tmp_path: Path) -> None:
    render_pack.render_pack(pack_config, track_number=1, raw=True, decoder=FakeDecoder(SOURCES))
    data = (tmp_path / "out" / "pack-1.pcm").read_bytes()
    assert len(data) == 1000 * 4
    assert not data.startswith(b"MSU1")


def test_raw_requires_track_number(pack_config: Path) -> None:
    with pytest.raises(ValueError):
        render_pack.render_pack(pack_config, raw=True, decoder=FakeDecoder(SOURCES))


def test_unknown_track_number_is_config_error(pack_config: Path) -> None:
    with pytest.raises(ConfigError, match="No track #9"):
        render_pack.render_pack(pack_config, track_number=9, decoder=FakeDecoder(SOURCES))


def test_failed_track_does_not_stop_siblings(pack_config: Path, tmp_path: Path) -> None:
    with pytest.raises(render_pack.PackRenderError) as excinfo:
        render_pack.render_pack(pack_config, decoder=FakeDecoder(SOURCES, failing=("b.wav",)))

    assert [s.track_number for s in excinfo.value.failed] == [3]
    out = tmp_path / "out"
    assert (out / "pack-1.pcm").exists()
    assert (out / "pack-2.pcm").exists()
    assert not (out / "pack-3.pcm").exists()
    assert json.loads((out / "pack.json").read_text())["failed"] == [3]


def test_broken_graph_writes_nothing(tmp_path: Path) -> None:
    config = _write_config(
        tmp_path,
        [
            {"track_number": 1, "copy_of": 2},
            {"track_number": 2, "copy_of": 1},
        ],
    )
    with pytest.raises(ConfigError, match="cycle"):
        render_pack.render_pack(config, decoder=FakeDecoder(SOURCES))
    assert not (tmp_path / "out").exists()


def test_loop_bounds_are_checked_before_any_decoding(tmp_path: Path) -> None:
    config = _write_config(
        tmp_path,
        [
            {"track_number": 1, "file": "a.wav", "loop": 10},
            {"track_number": 2, "file": "a.wav", "trim_end": 100, "loop": 500},
        ],
    )
    decoder = FakeDecoder(SOURCES)
    decoded: list[str] = []
    real_decode = decoder.decode

    def counting_decode(source: Path) -> np.ndarray:
        decoded.append(Path(source).name)
        return real_decode(source)

    decoder.decode = counting_decode  # type: ignore[method-assign]

    with pytest.raises(FormatViolationError, match="loop point 500"):
        render_pack.render_pack(config, decoder=decoder)

    assert decoded == []
    assert not (tmp_path / "out").exists()


def test_main_reports_loop_bound_errors(tmp_path: Path) -> None:
    config = _write_config(tmp_path, [{"track_number": 1, "file": "a.wav", "trim_end": 100, "loop": 500}])
    assert render_pack.main([str(config)]) == 2
    assert not (tmp_path / "out").exists()


def test_dry_run_writes_nothing(pack_config: Path, tmp_path: Path) -> None:
    assert render_pack.render_pack(pack_config, dry_run=True, decoder=FakeDecoder(SOURCES)) == []
    assert not (tmp_path / "out").exists()


def test_parallel_dispatch_is_used_for_multiple_workers(
    pack_config: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: dict[str, object] = {}

    def fake_dispatch(tracks, output_prefix, decoder_kwargs, *, workers, raw, log_level):
        seen["workers"] = workers
        seen["decoder_kwargs"] = decoder_kwargs
        return [
            render_pack.TrackRenderSummary(track_number=t.track_number, key=t.key, title=t.title, source="")
            for t in tracks
        ]

    monkeypatch.setattr(render_pack.os, "cpu_count", lambda: 8)
    monkeypatch.setattr(render_pack, "_dispatch_parallel_tracks", fake_dispatch)

    summaries = render_pack.render_pack(pack_config, workers=4, ffmpeg_path="/opt/ffmpeg", decoder_timeout=30)

    assert seen["workers"] == 3
    assert seen["decoder_kwargs"] == {"ffmpeg_path": "/opt/ffmpeg", "timeout": 30}
    assert [s.track_number for s in summaries] == [1, 2, 3]


def test_resolve_workers_bounds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(render_pack.os, "cpu_count", lambda: 2)
    assert render_pack._resolve_workers(None, 10) == 1
    assert render_pack._resolve_workers(0, 10) == 1
    assert render_pack._resolve_workers(16, 10) == 2
    assert render_pack._resolve_workers(2, 1) == 1


def test_parse_set_overrides() -> None:
    assert render_pack._parse_set_overrides(["rms_target=-20", "artist=Someone"]) == {
        "rms_target": -20,
        "artist": "Someone",
    }
    with pytest.raises(ValueError):
        render_pack._parse_set_overrides(["missing-equals"])


def test_main_returns_config_error_status(tmp_path: Path) -> None:
    assert render_pack.main([str(tmp_path / "missing.yaml")]) == 2


def test_main_dry_run_succeeds(pack_config: Path) -> None:
    assert render_pack.main([str(pack_config), "--dry-run"]) == 0
