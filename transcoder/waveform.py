"""Peak waveform summaries for the player UI.

The waveform is computed from mono 16-bit PCM at 44.1 kHz: every sample's
absolute amplitude is scaled into [0, 1] and the stream is reduced to a fixed
number of points by keeping the loudest sample of each block. Peaks survive the
reduction, so short transients still show up in the rendered waveform.
"""

import logging
import subprocess
from collections.abc import Sequence

import numpy as np

import config
from errors import TranscodeError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 44100
TARGET_POINTS = 1000
_INT16_SCALE = 32768.0


def decode_mono_pcm(file_path: str, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Decode any ffmpeg-readable file to normalized absolute amplitudes."""
    cmd = [
        "ffmpeg",
        "-nostats",
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        file_path,
        "-vn",
        "-ac",
        "1",
        "-ar",
        str(sample_rate),
        "-f",
        "s16le",
        "-acodec",
        "pcm_s16le",
        "-",
    ]
    result = subprocess.run(cmd, capture_output=True, timeout=config.FFMPEG_TIMEOUT)
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        raise TranscodeError(f"Waveform generation failed: {stderr[-500:]}", stage="waveform")

    raw = result.stdout
    usable = len(raw) - (len(raw) % 2)
    samples = np.frombuffer(raw[:usable], dtype="<i2")
    return np.abs(samples.astype(np.float32)) / _INT16_SCALE


def downsample_peaks(peaks: Sequence[float], target_length: int = TARGET_POINTS) -> list[float]:
    """Reduce ``peaks`` to ``target_length`` points, keeping each block's maximum.

    Inputs no longer than ``target_length`` come back unchanged.
    """
    if len(peaks) <= target_length:
        return list(peaks)

    values = np.asarray(peaks, dtype=np.float64)
    block_size = len(values) / target_length
    starts = np.floor(np.arange(target_length) * block_size).astype(np.int64)
    return np.maximum.reduceat(values, starts).tolist()


def generate_waveform(file_path: str, target_length: int = TARGET_POINTS) -> list[float]:
    samples = decode_mono_pcm(file_path)
    logger.info(f"Decoded {samples.size} samples from {file_path}")
    return [float(v) for v in downsample_peaks(samples, target_length)]


def waveform_document(peaks: Sequence[float], duration: float) -> dict:
    return {
        "peaks": list(peaks),
        "duration": duration,
        "sampleRate": SAMPLE_RATE,
    }
