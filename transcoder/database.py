import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import config
from errors import TrackAlreadyMaterialized
from models import Track, Upload

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS uploads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    mime TEXT NOT NULL,
    size INTEGER NOT NULL,
    temp_path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'Queued',
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    album TEXT NOT NULL,
    genre TEXT NOT NULL,
    duration_sec INTEGER NOT NULL,
    bpm REAL,
    loudness_i REAL NOT NULL,
    status TEXT NOT NULL,
    source_type TEXT NOT NULL DEFAULT 'File',
    original_file_key TEXT NOT NULL,
    audio_128_key TEXT NOT NULL,
    audio_320_key TEXT NOT NULL,
    waveform_json_key TEXT NOT NULL,
    cover_image_key TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_uploads_status ON uploads(status);
CREATE INDEX IF NOT EXISTS idx_tracks_owner ON tracks(owner_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(config.DB_PATH, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def db():
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    conn = get_connection()
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def ping() -> bool:
    try:
        with db() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
    except sqlite3.Error as e:
        logger.error(f"Database ping failed: {e}")
        return False


# --- uploads ---


def create_upload(
    upload_id: str,
    user_id: str,
    file_name: str,
    mime: str,
    size: int,
    temp_path: str,
) -> None:
    now = _now()
    with db() as conn:
        conn.execute(
            """
            INSERT INTO uploads (id, user_id, file_name, mime, size, temp_path,
                                 status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 'Queued', ?, ?)
            """,
            (upload_id, user_id, file_name, mime, size, temp_path, now, now),
        )


def get_upload(upload_id: str) -> Upload | None:
    with db() as conn:
        row = conn.execute("SELECT * FROM uploads WHERE id=?", (upload_id,)).fetchone()
    if not row:
        return None
    return Upload(**dict(row))


# Status only moves forward: Queued -> Processing -> Completed | Failed.
# Failed -> Queued is the one way back, through an operator retry.


def mark_upload_processing(upload_id: str) -> None:
    with db() as conn:
        conn.execute(
            """
            UPDATE uploads SET status='Processing', updated_at=?
            WHERE id=? AND status IN ('Queued', 'Processing')
            """,
            (_now(), upload_id),
        )


def mark_upload_completed(upload_id: str) -> None:
    with db() as conn:
        conn.execute(
            """
            UPDATE uploads SET status='Completed', error=NULL, updated_at=?
            WHERE id=? AND status IN ('Queued', 'Processing')
            """,
            (_now(), upload_id),
        )


def mark_upload_failed(upload_id: str, error: str) -> None:
    with db() as conn:
        conn.execute(
            "UPDATE uploads SET status='Failed', error=?, updated_at=? WHERE id=? AND status != 'Completed'",
            (error, _now(), upload_id),
        )


def record_upload_error(upload_id: str, error: str) -> None:
    """Store an attempt's error without leaving the Processing state."""
    with db() as conn:
        conn.execute(
            "UPDATE uploads SET error=?, updated_at=? WHERE id=? AND status != 'Completed'",
            (error, _now(), upload_id),
        )



def reset_upload_for_retry(upload_id: str) -> None:
    with db() as conn:
        conn.execute(
            "UPDATE uploads SET status='Queued', error=NULL, updated_at=? WHERE id=? AND status='Failed'",
            (_now(), upload_id),
        )


# --- tracks ---


def create_track(track: Track) -> None:
    """Insert a Ready track. The id is the upload id, so a repeat insert is refused."""
    try:
        with db() as conn:
            conn.execute(
                """
                INSERT INTO tracks (id, owner_id, title, artist, album, genre,
                                    duration_sec, bpm, loudness_i, status, source_type,
                                    original_file_key, audio_128_key, audio_320_key,
                                    waveform_json_key, cover_image_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    track.id,
                    track.owner_id,
                    track.title,
                    track.artist,
                    track.album,
                    track.genre,
                    track.duration_sec,
                    track.bpm,
                    track.loudness_i,
                    track.status,
                    track.source_type,
                    track.original_file_key,
                    track.audio_128_key,
                    track.audio_320_key,
                    track.waveform_json_key,
                    track.cover_image_key,
                    track.created_at,
                ),
            )
    except sqlite3.IntegrityError as e:
        raise TrackAlreadyMaterialized(track.id) from e


def get_track(track_id: str) -> Track | None:
    with db() as conn:
        row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
    if not row:
        return None
    return Track(**dict(row))
