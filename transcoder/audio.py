import base64
import json
import logging
import math
import subprocess

import librosa  # ty: ignore[unresolved-import]
import numpy as np
from mutagen import File as MutagenFile
from mutagen import MutagenError
from mutagen.flac import Picture

import config
from models import AudioAnalysis

logger = logging.getLogger(__name__)

TARGET_LOUDNESS = -23.0
LOUDNORM_FILTER = "loudnorm=I=-23:LRA=7:TP=-2"
TEMPO_WINDOW_S = 120.0


def _first(tags, key: str) -> str | None:
    if not tags:
        return None
    values = tags.get(key)
    if not values:
        return None
    value = str(values[0]).strip()
    return value or None


def read_tags(file_path: str) -> dict:
    """Title/artist/album/genre/bpm and duration from the file's tags."""
    try:
        audio = MutagenFile(file_path, easy=True)
    except MutagenError as e:
        logger.warning(f"Could not read tags from {file_path}: {e}")
        return {}
    if audio is None:
        return {}

    info = {
        "duration": float(audio.info.length) if getattr(audio, "info", None) else None,
        "title": _first(audio.tags, "title"),
        "artist": _first(audio.tags, "artist"),
        "album": _first(audio.tags, "album"),
        "genre": _first(audio.tags, "genre"),
        "bpm": None,
    }
    bpm = _first(audio.tags, "bpm")
    if bpm:
        try:
            info["bpm"] = float(bpm)
        except ValueError:
            pass  # free-text bpm tags are ignored
    return info


def extract_cover_image(file_path: str) -> bytes | None:
    """Return the first embedded picture, or None when there isn't one."""
    try:
        audio = MutagenFile(file_path)
    except MutagenError as e:
        logger.warning(f"Failed to extract cover image from {file_path}: {e}")
        return None
    if audio is None:
        return None

    # FLAC
    pictures = getattr(audio, "pictures", None)
    if pictures:
        return bytes(pictures[0].data)

    tags = audio.tags
    if not tags:
        return None

    # ID3 (mp3, wav, aiff)
    if hasattr(tags, "getall"):
        frames = tags.getall("APIC")
        if frames:
            return bytes(frames[0].data)
        return None

    # MP4 / m4a
    covers = tags.get("covr")
    if covers:
        return bytes(covers[0])

    # Ogg Vorbis / Opus
    blocks = tags.get("metadata_block_picture")
    if blocks:
        try:
            return bytes(Picture(base64.b64decode(blocks[0])).data)
        except (ValueError, MutagenError) as e:
            logger.warning(f"Unreadable embedded picture in {file_path}: {e}")
    return None


def probe_duration(file_path: str) -> float:
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            file_path,
        ],
        capture_output=True,
        text=True,
        timeout=config.FFMPEG_TIMEOUT,
    )
    if result.returncode != 0:
        return 0.0
    info = json.loads(result.stdout or "{}")
    try:
        return max(float(info.get("format", {}).get("duration", 0.0)), 0.0)
    except (TypeError, ValueError):
        return 0.0


def parse_loudnorm_json(text: str) -> dict | None:
    lb = text.rfind("{")
    rb = text.rfind("}")
    if lb != -1 and rb != -1 and rb > lb:
        try:
            return json.loads(text[lb : rb + 1])
        except json.JSONDecodeError:
            return None
    return None


def measure_loudness(file_path: str) -> float:
    """Integrated loudness (LUFS) from an EBU R128 loudnorm scan, -23 if unavailable."""
    cmd = [
        "ffmpeg",
        "-nostats",
        "-hide_banner",
        "-i",
        file_path,
        "-filter:a",
        f"{LOUDNORM_FILTER}:print_format=json",
        "-f",
        "null",
        "-",
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=config.FFMPEG_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Loudness scan failed for {file_path}: {e}")
        return TARGET_LOUDNESS

    if result.returncode != 0:
        logger.warning(f"Loudness scan exited {result.returncode} for {file_path}")
        return TARGET_LOUDNESS

    measured = parse_loudnorm_json(result.stderr) or {}
    try:
        loudness = float(measured.get("input_i"))
    except (TypeError, ValueError):
        return TARGET_LOUDNESS
    if not math.isfinite(loudness):
        return TARGET_LOUDNESS
    return loudness


def detect_tempo(file_path: str) -> float | None:
    try:
        y, sr = librosa.load(file_path, sr=None, mono=True, duration=TEMPO_WINDOW_S)
        if y.size == 0:
            return None
        # Tempo from the percussive component only
        _, y_percussive = librosa.effects.hpss(y)
        tempo, _ = librosa.beat.beat_track(y=y_percussive, sr=sr)
        tempo_bpm = float(np.atleast_1d(tempo)[0])
    except Exception as e:
        logger.warning(f"Tempo detection failed for {file_path}: {e}")
        return None
    return tempo_bpm if tempo_bpm > 0 else None


def analyze_audio(file_path: str, include_cover: bool = True) -> AudioAnalysis:
    """Duration, tempo, loudness, cover art and tags for a local file."""
    logger.info(f"Analyzing {file_path}")

    tags = read_tags(file_path)
    duration = tags.get("duration") or probe_duration(file_path)
    bpm = tags.get("bpm") or detect_tempo(file_path)
    loudness = measure_loudness(file_path)

    logger.info(
        f"Analysis: duration={duration:.1f}s bpm={bpm if bpm is None else round(bpm, 1)} "
        f"loudness={loudness:.1f} LUFS"
    )

    return AudioAnalysis(
        duration=max(float(duration), 0.0),
        loudness=loudness,
        bpm=bpm,
        cover_image=extract_cover_image(file_path) if include_cover else None,
        title=tags.get("title"),
        artist=tags.get("artist"),
        album=tags.get("album"),
        genre=tags.get("genre"),
    )
