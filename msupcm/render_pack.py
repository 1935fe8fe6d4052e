"""
Pack-level orchestration entry point for the MSU-1 renderer.

Usage:
    python -m msupcm.render_pack pack.yaml            # every track
    python -m msupcm.render_pack pack.yaml 12         # one track
    python -m msupcm.render_pack pack.yaml 12 --raw   # unheadered, unpadded PCM
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from concurrent.futures import Future, ProcessPoolExecutor, as_completed
from concurrent.futures.process import BrokenProcessPool
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config_schema import ConfigError, PackConfig, load_pack_config
from .decoder import DEFAULT_TIMEOUT, DecodeError, DecoderSession, DecoderUnavailableError
from .pcm_writer import (
    compute_sha256,
    track_output_path,
    write_marker,
    write_pcm,
    write_run_summary,
    write_track_list,
)
from .render_track import FormatViolationError, SourceDecoder, check_static_loop_bounds, render_track
from .resolver import AttributeResolver, PackLoader, ResolvedTrack

LOG = logging.getLogger("msupcm.pack")
_WORKER_DECODER: DecoderSession | None = None
_WORKER_LOGGING_SETUP: bool = False
WorkerPayload = tuple[ResolvedTrack, Path, dict[str, object], bool, int]


@dataclass(slots=True)
class TrackRenderSummary:
    track_number: Optional[int]
    key: Optional[str]
    title: Optional[str]
    source: str
    output_path: Optional[Path] = None
    loop_point: Optional[int] = None
    samples: int = 0
    amplification: Optional[float] = None
    checksum: Optional[str] = None
    seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["output_path"] = str(self.output_path) if self.output_path else None
        return data


class PackRenderError(RuntimeError):
    """Raised when one or more tracks of a pack failed to render."""

    def __init__(self, failed: Sequence[TrackRenderSummary]) -> None:
        self.failed = list(failed)
        numbers = ", ".join(f"#{s.track_number} ({s.key})" for s in self.failed)
        super().__init__(f"{len(self.failed)} track(s) failed: {numbers}")


def render_and_write(
    track: ResolvedTrack,
    output_prefix: Path,
    *,
    decoder: SourceDecoder,
    raw: bool = False,
) -> TrackRenderSummary:
    """
    Render one track and write its `.pcm` file.

    Decode, loop-point and write errors are fatal for this track only and are
    reported in the returned summary.
    """
    LOG.info("Processing #%s - %s", track.track_number, track.key)
    summary = TrackRenderSummary(
        track_number=track.track_number,
        key=track.key,
        title=track.title,
        source=track.source_description(),
    )
    started = time.perf_counter()
    try:
        rendered = render_track(track, decoder, pad=not raw)
        path = write_pcm(
            track_output_path(output_prefix, track.track_number),
            rendered,
            raw=raw,
            label=track.label,
        )
    except (DecodeError, FormatViolationError, OSError) as exc:
        LOG.error("Track #%s (%s) failed: %s", track.track_number, track.key, exc)
        summary.error = str(exc)
        return summary
    finally:
        summary.seconds = round(time.perf_counter() - started, 3)

    summary.output_path = path
    summary.loop_point = rendered.loop_point
    summary.samples = rendered.sample_count
    summary.amplification = rendered.amplification
    summary.checksum = compute_sha256(path)
    return summary


def _get_worker_decoder(
    decoder_kwargs: dict[str, object],
    *,
    log_level: int,
) -> DecoderSession:
    """
    Lazily instantiate a decoder per worker process.
    """
    global _WORKER_DECODER, _WORKER_LOGGING_SETUP
    if not _WORKER_LOGGING_SETUP:
        _setup_logging(log_level == logging.DEBUG)
        _WORKER_LOGGING_SETUP = True
    if _WORKER_DECODER is None:
        _WORKER_DECODER = DecoderSession(**decoder_kwargs)  # type: ignore[arg-type]
    return _WORKER_DECODER


def _render_track_worker(args: WorkerPayload) -> TrackRenderSummary:
    track, output_prefix, decoder_kwargs, raw, log_level = args
    decoder = _get_worker_decoder(decoder_kwargs, log_level=log_level)
    return render_and_write(track, output_prefix, decoder=decoder, raw=raw)


def _dispatch_parallel_tracks(
    tracks: Sequence[ResolvedTrack],
    output_prefix: Path,
    decoder_kwargs: dict[str, object],
    *,
    workers: int,
    raw: bool,
    log_level: int,
) -> List[TrackRenderSummary]:
    """
    Render tracks in parallel worker processes, returning summaries in track order.
    """
    payloads: List[WorkerPayload] = [
        (track, output_prefix, decoder_kwargs, raw, log_level) for track in tracks
    ]
    results: dict[Optional[int], TrackRenderSummary] = {}
    try:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures: List[Future[TrackRenderSummary]] = [
                executor.submit(_render_track_worker, payload) for payload in payloads
            ]
            try:
                for future in as_completed(futures):
                    summary = future.result()
                    results[summary.track_number] = summary
            except Exception:
                for pending in futures:
                    pending.cancel()
                raise
    except BrokenProcessPool as exc:
        raise RuntimeError(
            "Parallel track rendering failed because a worker exited unexpectedly. "
            "Reduce --workers or inspect system logs for OOM details."
        ) from exc
    return [results[track.track_number] for track in tracks]


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _parse_set_overrides(values: Optional[List[str]]) -> dict[str, object]:
    if not values:
        return {}
    overrides: dict[str, object] = {}
    for item in values:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must use KEY=VALUE format.")
        key, raw_value = item.split("=", 1)
        try:
            # Allow YAML parsing for convenience (numbers, booleans, lists)
            value = load_yaml_value(raw_value)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Failed to parse override '{item}': {exc}") from exc
        overrides[key.strip()] = value
    return overrides


def load_yaml_value(text: str) -> object:
    """Parse a single YAML value (used for CLI overrides)."""
    import yaml

    return yaml.safe_load(text)


def _select_tracks(
    tracks: List[ResolvedTrack], track_number: Optional[int]
) -> List[ResolvedTrack]:
    if track_number is None:
        return tracks
    selected = [track for track in tracks if track.track_number == track_number]
    if not selected:
        raise ConfigError(
            f"No track #{track_number} in pack. "
            f"Available tracks: {[t.track_number for t in tracks]}"
        )
    return selected


def _check_loop_bounds(tracks: Sequence[ResolvedTrack]) -> None:
    """Fail the run on any loop point that is out of range before audio is decoded."""
    problems: List[str] = []
    for track in tracks:
        try:
            check_static_loop_bounds(track)
        except FormatViolationError as exc:
            LOG.error("%s", exc)
            problems.append(str(exc))
    if problems:
        raise FormatViolationError("; ".join(problems))


def _resolve_workers(requested: Optional[int], track_count: int) -> int:
    try:
        worker_count = int(requested) if requested is not None else 1
    except (TypeError, ValueError):
        LOG.warning(
            "Invalid worker count '%s'; falling back to a single worker.",
            requested,
        )
        worker_count = 1
    if worker_count < 1:
        LOG.warning("Worker count %s is below 1; using 1.", worker_count)
        worker_count = 1
    max_workers = os.cpu_count() or 1
    if worker_count > max_workers:
        LOG.warning(
            "Requested %d workers exceeds available CPU cores (%d); capping to %d.",
            worker_count,
            max_workers,
            max_workers,
        )
        worker_count = max_workers
    return max(1, min(worker_count, track_count))


def load_and_resolve(
    config_path: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    loader: Optional[PackLoader] = None,
) -> tuple[PackConfig, List[ResolvedTrack]]:
    """Parse the pack and resolve every track; raises `ConfigError` on broken graphs."""
    loader = loader or PackLoader()
    pack = loader.register(load_pack_config(config_path, overrides=overrides))
    resolved = AttributeResolver(loader).resolve_pack(pack)
    return pack, resolved


def render_pack(
    config_path: Path,
    *,
    track_number: Optional[int] = None,
    raw: bool = False,
    dry_run: bool = False,
    verbose: bool = False,
    workers: Optional[int] = None,
    ffmpeg_path: str = "ffmpeg",
    decoder_timeout: Optional[float] = DEFAULT_TIMEOUT,
    overrides: Optional[Mapping[str, Any]] = None,
    decoder: Optional[SourceDecoder] = None,
) -> List[TrackRenderSummary]:
    """Render the tracks of the pack defined in `config_path`."""
    _setup_logging(verbose)
    if raw and track_number is None:
        raise ValueError("Raw output requires a track number.")

    pack, resolved = load_and_resolve(config_path, overrides=overrides)
    tracks = _select_tracks(resolved, track_number)
    _check_loop_bounds(tracks)
    LOG.info("Starting pack render | %s", pack.describe())

    if dry_run:
        LOG.info("Dry run enabled; no audio will be decoded or written.")
        for track in tracks:
            LOG.info("Track plan | %s", track.describe())
        return []

    whole_pack = track_number is None
    if whole_pack:
        write_marker(pack.output_prefix)
        write_track_list(pack, resolved)

    decoder_kwargs: dict[str, object] = {
        "ffmpeg_path": ffmpeg_path,
        "timeout": decoder_timeout,
    }
    worker_count = 1 if decoder is not None else _resolve_workers(workers, len(tracks))

    if worker_count > 1:
        LOG.info("Parallel rendering enabled with %d workers.", worker_count)
        summaries = _dispatch_parallel_tracks(
            tracks,
            pack.output_prefix,
            decoder_kwargs,
            workers=worker_count,
            raw=raw,
            log_level=logging.DEBUG if verbose else logging.INFO,
        )
    else:
        session = decoder or DecoderSession(ffmpeg_path=ffmpeg_path, timeout=decoder_timeout)
        summaries = [
            render_and_write(track, pack.output_prefix, decoder=session, raw=raw)
            for track in tracks
        ]

    if whole_pack:
        _write_run_metadata(pack, summaries)

    failed = [summary for summary in summaries if not summary.ok]
    if failed:
        raise PackRenderError(failed)

    LOG.info("Pack render completed. Outputs stored under %s", pack.output_prefix.parent)
    return summaries


def _write_run_metadata(pack: PackConfig, summaries: List[TrackRenderSummary]) -> None:
    timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    metadata = {
        "created_at": timestamp,
        "pack": pack.describe(),
        "tracks": [summary.to_dict() for summary in summaries],
        "failed": [s.track_number for s in summaries if not s.ok],
    }
    write_run_summary(pack, metadata)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Render an MSU-1 pack definition into PCM files.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("config", type=Path, help="Path to the YAML or JSON pack file.")
    parser.add_argument(
        "track",
        type=int,
        nargs="?",
        default=None,
        help="Render only the track with this number.",
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        help="Write unheadered, unpadded PCM for the selected track (for checking loops in an editor).",
    )
    parser.add_argument(
        "--set",
        action="append",
        dest="overrides",
        metavar="KEY=VALUE",
        help="Apply inline overrides to pack-level settings, e.g., rms_target=-20.",
    )
    parser.add_argument(
        "--output-prefix",
        type=Path,
        dest="output_prefix",
        help="Override the pack output prefix.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve the pack and log the plan without rendering.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "--ffmpeg",
        type=str,
        default="ffmpeg",
        help="Path to the ffmpeg executable.",
    )
    parser.add_argument(
        "--decoder-timeout",
        type=float,
        dest="decoder_timeout",
        default=DEFAULT_TIMEOUT,
        help="Seconds allowed for decoding a single source file.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel worker processes for track rendering.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.raw and args.track is None:
        parser.error("--raw requires a track number.")

    overrides = _parse_set_overrides(args.overrides)
    if args.output_prefix:
        overrides["output_prefix"] = str(args.output_prefix.resolve())

    try:
        render_pack(
            args.config,
            track_number=args.track,
            raw=args.raw,
            dry_run=args.dry_run,
            verbose=args.verbose,
            workers=args.workers,
            ffmpeg_path=args.ffmpeg,
            decoder_timeout=args.decoder_timeout,
            overrides=overrides,
        )
    except ConfigError as exc:
        LOG.error("Configuration error: %s", exc)
        return 2
    except FormatViolationError as exc:
        LOG.error("Loop point error: %s", exc)
        return 2
    except DecoderUnavailableError as exc:
        LOG.error("%s", exc)
        return 2
    except PackRenderError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
