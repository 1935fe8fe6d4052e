"""Decodes source media to 44.1 kHz stereo PCM through an external FFmpeg process."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Optional

import numpy as np

from . import CHANNELS, FRAME_BYTES, SAMPLE_RATE
from .samples import bytes_to_samples

LOG = logging.getLogger("msupcm.decoder")

DEFAULT_TIMEOUT = 300.0


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True))


class DecoderUnavailableError(RuntimeError):
    """Raised when the FFmpeg executable cannot be started."""


class DecodeError(RuntimeError):
    """Raised when a source file cannot be decoded into PCM."""


class DecoderSession:
    """
    Thin wrapper around an FFmpeg invocation producing raw `s16le` audio.

    Parameters
    ----------
    ffmpeg_path:
        Path or name of the FFmpeg executable.
    timeout:
        Seconds to wait for a single decode before it is treated as failed.
        `None` waits indefinitely.
    """

    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> None:
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive.")
        self._ffmpeg_path = ffmpeg_path
        self._timeout = timeout
        self.decoded_files = 0

    @property
    def ffmpeg_path(self) -> str:
        return self._ffmpeg_path

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    def build_command(self, source: Path) -> list[str]:
        return [
            self._ffmpeg_path,
            "-loglevel",
            "warning",
            "-i",
            str(source),
            "-c:a",
            "pcm_s16le",
            "-f",
            "s16le",
            "-ac",
            str(CHANNELS),
            "-ar",
            str(SAMPLE_RATE),
            "-",
        ]

    def decode(self, source: Path) -> np.ndarray:
        """Return the decoded samples of `source` with shape `(samples, 2)`."""
        source = Path(source)
        if not source.is_file():
            raise DecodeError(f"Audio source not found: {source}")

        cmd = self.build_command(source)
        LOG.debug("FFmpeg command: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise DecoderUnavailableError(f"ffmpeg not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise DecodeError(
                f"Decoding {source} exceeded the {self._timeout}s timeout."
            ) from exc

        stderr = result.stderr.decode("utf-8", errors="ignore").strip()
        if result.returncode != 0:
            LOG.error("FFmpeg stderr: %s", stderr)
            raise DecodeError(f"FFmpeg exited with status {result.returncode} decoding {source}")
        if stderr:
            LOG.warning("FFmpeg reported for %s: %s", source.name, stderr)

        data = result.stdout
        if not data:
            raise DecodeError(f"FFmpeg produced no audio for {source}")
        if len(data) % FRAME_BYTES != 0:
            raise DecodeError(
                f"FFmpeg output for {source} is truncated ({len(data)} bytes is not a whole number of samples)."
            )

        samples = bytes_to_samples(data)
        self.decoded_files += 1
        _log(
            "decoder.decoded",
            source=str(source),
            samples=int(samples.shape[0]),
            seconds=round(samples.shape[0] / SAMPLE_RATE, 3),
        )
        return samples
