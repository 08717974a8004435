import logging
import os
import subprocess
import tempfile
import threading
from collections.abc import Callable
from typing import Protocol

import config
from audio import LOUDNORM_FILTER
from errors import TranscodeError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class Transcoder(Protocol):
    def transcode(
        self,
        input_path: str,
        output_path: str,
        bitrate: int,
        on_progress: ProgressCallback | None = None,
        duration: float | None = None,
    ) -> str:
        """Encode ``input_path`` to MP3 at ``bitrate`` kbps, reporting 0-100 progress."""
        ...


def _parse_progress_line(line: str, duration_us: float) -> float | None:
    key, _, value = line.strip().partition("=")
    # ffmpeg reports out_time_ms in microseconds as well
    if key not in ("out_time_us", "out_time_ms") or duration_us <= 0:
        return None
    try:
        elapsed = float(value)
    except ValueError:
        return None
    return max(0.0, min(100.0, elapsed * 100.0 / duration_us))


class FfmpegTranscoder:
    """MP3 encoder backed by the ffmpeg CLI with EBU R128 normalization."""

    def __init__(self, binary: str = "ffmpeg", timeout: int | None = None):
        self.binary = binary
        self.timeout = timeout or config.FFMPEG_TIMEOUT

    def _command(self, input_path: str, output_path: str, bitrate: int) -> list[str]:
        return [
            self.binary,
            "-y",
            "-nostats",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            input_path,
            "-vn",
            "-filter:a",
            LOUDNORM_FILTER,
            "-acodec",
            "libmp3lame",
            "-b:a",
            f"{bitrate}k",
            "-ac",
            "2",
            "-ar",
            "44100",
            "-progress",
            "pipe:1",
            "-f",
            "mp3",
            output_path,
        ]

    def transcode(
        self,
        input_path: str,
        output_path: str,
        bitrate: int,
        on_progress: ProgressCallback | None = None,
        duration: float | None = None,
    ) -> str:
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = self._command(input_path, output_path, bitrate)
        logger.info(f"Transcoding {input_path} -> {output_path} ({bitrate}k)")

        # stderr is spooled to a file; only stdout is read while ffmpeg runs
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as errfile:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=errfile,
                    text=True,
                )
            except OSError as e:
                raise TranscodeError(f"Could not start ffmpeg: {e}", stage=f"transcode-{bitrate}") from e

            killer = threading.Timer(self.timeout, proc.kill)
            killer.start()
            try:
                duration_us = (duration or 0.0) * 1_000_000
                for line in proc.stdout:
                    if on_progress is None:
                        continue
                    pct = _parse_progress_line(line, duration_us)
                    if pct is not None:
                        on_progress(pct)
                returncode = proc.wait()
            finally:
                killer.cancel()

            errfile.seek(0)
            stderr = errfile.read()

        if returncode != 0:
            raise TranscodeError(
                f"ffmpeg {bitrate}k transcode failed (exit {returncode}): {stderr[-500:]}",
                stage=f"transcode-{bitrate}",
            )
        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise TranscodeError(
                f"ffmpeg {bitrate}k transcode produced no output", stage=f"transcode-{bitrate}"
            )

        if on_progress is not None:
            on_progress(100.0)
        return output_path
