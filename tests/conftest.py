import os
import shutil

import fakeredis
import numpy as np
import pytest
import soundfile as sf

import config
import database
from models import AudioAnalysis
from storage import LocalDiskStorage

requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg not installed",
)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "transcoder.db"
    monkeypatch.setattr(config, "DB_PATH", str(path))
    database.init_db()
    return path


@pytest.fixture
def storage(tmp_path):
    return LocalDiskStorage(str(tmp_path / "storage"))


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def sine_file(tmp_path):
    sr = 44100
    t = np.linspace(0, 1.0, sr, endpoint=False)
    wave = 0.5 * np.sin(2 * np.pi * 440 * t)
    path = tmp_path / "tone.wav"
    sf.write(path, wave, sr, subtype="PCM_16")
    return path


class FakeTranscoder:
    """Writes a small fake MP3 and reports progress like ffmpeg would."""

    def __init__(self, fail_on: int | None = None):
        self.fail_on = fail_on
        self.calls: list[int] = []

    def transcode(self, input_path, output_path, bitrate, on_progress=None, duration=None):
        from errors import TranscodeError

        self.calls.append(bitrate)
        if bitrate == self.fail_on:
            raise TranscodeError(f"ffmpeg {bitrate}k transcode failed (exit 1): boom", stage=f"transcode-{bitrate}")
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(b"ID3" + bytes([bitrate % 256]) * 64)
        if on_progress is not None:
            for pct in (25, 50, 75, 100):
                on_progress(pct)
        return output_path


def fake_analysis(duration: float = 180.0):
    def _analyze(path):
        return AudioAnalysis(duration=duration, loudness=-14.2, bpm=120.0, title="Test Song", artist="Tester")

    return _analyze


def fake_waveform(path):
    return [0.0, 0.5, 1.0, 0.25]


@pytest.fixture
def make_pipeline(storage, tmp_path):
    from pipeline import TranscodePipeline

    def _make(transcoder=None, duration=180.0, cover=None):
        return TranscodePipeline(
            storage,
            transcoder=transcoder or FakeTranscoder(),
            processing_dir=str(tmp_path / "processing"),
            analyze=fake_analysis(duration),
            waveform=fake_waveform,
            cover=lambda path: cover,
        )

    return _make


@pytest.fixture
def make_upload(db_path, tmp_path):
    """Create a temp input file plus its Queued upload row; returns the TranscodeJob."""
    from models import TranscodeJob

    def _make(upload_id="up-1", user_id="user-1", content=b"\xff\xfb" * 512, mime="audio/mpeg"):
        temp_dir = tmp_path / "uploads"
        temp_dir.mkdir(exist_ok=True)
        temp_path = temp_dir / f"{upload_id}.mp3"
        temp_path.write_bytes(content)
        database.create_upload(upload_id, user_id, "My Song.mp3", mime, len(content), str(temp_path))
        return TranscodeJob(
            upload_id=upload_id,
            user_id=user_id,
            temp_path=str(temp_path),
            temp_file_name=temp_path.name,
            year_month="2026-10",
        )

    return _make
