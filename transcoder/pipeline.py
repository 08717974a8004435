import functools
import logging
import os
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime, timezone

import config
import database
from audio import analyze_audio, extract_cover_image
from errors import InputError, TrackAlreadyMaterialized, is_retryable
from models import ClaimedJob, Track
from storage import StorageBackend, publish_artifacts
from transcode import FfmpegTranscoder, Transcoder
from waveform import generate_waveform, waveform_document

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/wave",
    "audio/x-wav",
    "audio/flac",
    "audio/x-flac",
    "audio/aac",
    "audio/mp4",
    "audio/x-m4a",
    "audio/ogg",
    "audio/vorbis",
    "audio/webm",
    "audio/x-ms-wma",
}

# Progress checkpoints
P_CLAIMED = 5
P_VERIFIED = 10
P_ANALYZED = 20
P_WAVEFORM = 30
P_COVER = 40
P_TRANSCODED_128 = 60
P_TRANSCODED_320 = 80
P_UPLOADED = 90
P_DONE = 100


class ProgressTracker:
    """Forwards integer percentages, dropping any that would move backwards."""

    def __init__(self, report: Callable[[int], None]):
        self._report = report
        self.value = 0

    def set(self, percent: float) -> None:
        pct = int(max(0, min(100, round(percent))))
        if pct <= self.value:
            return
        self.value = pct
        self._report(pct)

    def span(self, start: int, end: int) -> Callable[[float], None]:
        """Map a stage's own 0-100 progress onto [start, end]."""

        def _on_progress(stage_percent: float) -> None:
            self.set(start + stage_percent * (end - start) / 100.0)

        return _on_progress


class TranscodePipeline:
    """Runs one transcode job from claimed temp file to a Ready track."""

    def __init__(
        self,
        storage: StorageBackend,
        transcoder: Transcoder | None = None,
        processing_dir: str | None = None,
        analyze: Callable = functools.partial(analyze_audio, include_cover=False),
        waveform: Callable[[str], list[float]] = generate_waveform,
        cover: Callable[[str], bytes | None] = extract_cover_image,
    ):
        self.storage = storage
        self.transcoder = transcoder or FfmpegTranscoder()
        self.processing_dir = processing_dir or config.PROCESSING_DIR
        self.analyze = analyze
        self.waveform = waveform
        self.cover = cover

    def _log_step(self, job: ClaimedJob, step: str, started: float, **extra) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        details = " ".join(f"{k}={v}" for k, v in extra.items())
        logger.info(
            f"step={step} upload={job.data.upload_id} job={job.id} "
            f"attempt={job.attempts_made}/{job.max_attempts} ms={elapsed_ms} {details}".rstrip()
        )

    def _verify_input(self, job: ClaimedJob):
        data = job.data
        upload = database.get_upload(data.upload_id)
        if upload is None:
            raise InputError(f"Upload {data.upload_id} not found", stage="verify-input")
        if not os.path.isfile(data.temp_path):
            raise InputError(f"Temp file not found: {data.temp_path}", stage="verify-input")
        size = os.path.getsize(data.temp_path)
        if size == 0:
            raise InputError(f"Temp file is empty (0 bytes): {data.temp_path}", stage="verify-input")
        mime = (upload.mime or "").split(";")[0].strip().lower()
        if mime not in ALLOWED_MIME_TYPES:
            raise InputError(f"Unsupported MIME type for audio upload: {upload.mime!r}", stage="verify-input")
        return upload, size

    def _cleanup(self, job: ClaimedJob, stage: str, paths: list[str]) -> None:
        for path in paths:
            try:
                if os.path.exists(path):
                    os.unlink(path)
            except OSError as e:
                logger.warning(
                    f"Cleanup failed job={job.id} upload={job.data.upload_id} stage={stage} path={path}: {e}",
                    extra={"job_id": job.id, "stage": stage, "path": path},
                )

    def _workdir(self, job: ClaimedJob) -> str:
        workdir = os.path.join(self.processing_dir, job.data.user_id, job.data.upload_id)
        os.makedirs(workdir, exist_ok=True)
        return workdir

    def run(self, job: ClaimedJob, report_progress: Callable[[int], None]) -> dict:
        data = job.data
        progress = ProgressTracker(report_progress)
        started = time.monotonic()
        outputs: list[str] = []
        stage = "claimed"

        try:
            self._log_step(job, "worker-started", started, temp_path=data.temp_path)
            done = self._completed_track(data.upload_id)
            if done is not None:
                # Redelivered after the track was materialized
                self._log_step(job, "already-completed", started, track=done.id)
                self._cleanup(job, "cleanup", [data.temp_path])
                progress.set(P_DONE)
                return self._result(done)

            database.mark_upload_processing(data.upload_id)
            progress.set(P_CLAIMED)

            stage = "verify-input"
            upload, size = self._verify_input(job)
            self._log_step(job, "temp-file-verified", started, size=size)
            progress.set(P_VERIFIED)

            stage = "analyzing"
            analysis = self.analyze(data.temp_path)
            self._log_step(job, "audio-analyzed", started, duration=round(analysis.duration, 2))
            progress.set(P_ANALYZED)

            stage = "waveform"
            peaks = self.waveform(data.temp_path)
            self._log_step(job, "waveform-generated", started, points=len(peaks))
            progress.set(P_WAVEFORM)

            stage = "cover"
            cover_image = self.cover(data.temp_path)
            self._log_step(job, "cover-extracted", started, found=cover_image is not None)
            progress.set(P_COVER)

            workdir = self._workdir(job)
            mp3_128 = os.path.join(workdir, f"track_{data.upload_id}_128.mp3")
            mp3_320 = os.path.join(workdir, f"track_{data.upload_id}_320.mp3")

            stage = "transcoding-128"
            outputs.append(mp3_128)
            self.transcoder.transcode(
                data.temp_path,
                mp3_128,
                128,
                on_progress=progress.span(P_COVER, P_TRANSCODED_128),
                duration=analysis.duration,
            )
            progress.set(P_TRANSCODED_128)
            self._log_step(job, "generated-128kbps", started)

            stage = "transcoding-320"
            outputs.append(mp3_320)
            self.transcoder.transcode(
                data.temp_path,
                mp3_320,
                320,
                on_progress=progress.span(P_TRANSCODED_128, P_TRANSCODED_320),
                duration=analysis.duration,
            )
            progress.set(P_TRANSCODED_320)
            self._log_step(job, "generated-320kbps", started)

            stage = "uploading"
            with open(mp3_128, "rb") as f:
                audio_128 = f.read()
            with open(mp3_320, "rb") as f:
                audio_320 = f.read()
            keys = publish_artifacts(
                self.storage,
                data.user_id,
                data.upload_id,
                audio_128=audio_128,
                audio_320=audio_320,
                waveform_doc=waveform_document(peaks, analysis.duration),
                cover=cover_image,
            )
            self._log_step(job, "storage-upload-complete", started, cover=keys.cover is not None)
            progress.set(P_UPLOADED)

            stage = "create-track"
            track = Track(
                id=data.upload_id,
                owner_id=data.user_id,
                title=analysis.title or os.path.splitext(upload.file_name)[0] or data.upload_id,
                artist=analysis.artist or "Unknown Artist",
                album=analysis.album or "Unknown Album",
                genre=analysis.genre or "Unknown",
                duration_sec=int(round(analysis.duration)),
                bpm=analysis.bpm,
                loudness_i=analysis.loudness,
                status="Ready",
                source_type="File",
                original_file_key=f"uploads/{data.year_month}/{data.temp_file_name}",
                audio_128_key=keys.audio_128,
                audio_320_key=keys.audio_320,
                waveform_json_key=keys.waveform,
                cover_image_key=keys.cover,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            database.create_track(track)
            self._log_step(job, "track-created", started, title=track.title)

            stage = "complete-upload"
            database.mark_upload_completed(data.upload_id)

            stage = "cleanup"
            self._cleanup(job, stage, [data.temp_path, *outputs])
            self._log_step(job, "processing-temp-cleaned", started)
            progress.set(P_DONE)
            self._log_step(job, "worker-completed", started)
            return self._result(track)

        except Exception as e:
            self._handle_failure(job, stage, e, outputs, started)
            raise

    @staticmethod
    def _completed_track(upload_id: str) -> Track | None:
        upload = database.get_upload(upload_id)
        if upload is None or upload.status != "Completed":
            return None
        return database.get_track(upload_id)

    @staticmethod
    def _result(track: Track) -> dict:
        return {
            "success": True,
            "trackId": track.id,
            "audio128Key": track.audio_128_key,
            "audio320Key": track.audio_320_key,
            "waveformKey": track.waveform_json_key,
            "coverKey": track.cover_image_key,
        }

    def _handle_failure(
        self, job: ClaimedJob, stage: str, error: Exception, outputs: list[str], started: float
    ) -> None:
        data = job.data
        message = str(error) or error.__class__.__name__
        terminal = not is_retryable(error) or job.is_last_attempt

        logger.error(
            f"step=worker-failed upload={data.upload_id} job={job.id} stage={stage} "
            f"terminal={terminal} ms={int((time.monotonic() - started) * 1000)}: {message}",
            exc_info=True,
        )
        if isinstance(error, TrackAlreadyMaterialized):
            logger.error(f"Track {error.track_id} already materialized; operator intervention required")

        try:
            if terminal:
                database.mark_upload_failed(data.upload_id, message)
            else:
                database.record_upload_error(data.upload_id, message)
        except sqlite3.Error as db_error:
            logger.error(f"Could not record failure for upload {data.upload_id}: {db_error}")

        # Keep the input around while the queue may still re-attempt the job
        paths = [data.temp_path, *outputs] if terminal else outputs
        self._cleanup(job, stage, paths)
