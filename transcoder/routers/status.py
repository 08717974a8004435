import logging
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request

import database

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/jobs/{job_id}")
def get_job_status(job_id: str, request: Request):
    """Queue-level progress for one job (for progress bars)."""
    status = request.app.state.job_queue.get_status(job_id)
    if status is None:
        raise HTTPException(404, "Job not found")
    return {
        "id": status.id,
        "state": status.state,
        "progress": status.progress,
        "failedReason": status.failed_reason,
        "attemptsMade": status.attempts_made,
        "processedOn": status.processed_on,
        "finishedOn": status.finished_on,
    }


@router.get("/uploads/{upload_id}")
def get_upload(upload_id: str):
    """Upload lifecycle; the source of truth for pollers."""
    upload = database.get_upload(upload_id)
    if upload is None:
        raise HTTPException(404, "Upload not found")
    return {
        "id": upload.id,
        "status": upload.status,
        "error": upload.error,
        "fileName": upload.file_name,
        "createdAt": upload.created_at,
        "updatedAt": upload.updated_at,
    }


@router.get("/tracks/{track_id}")
def get_track(track_id: str):
    track = database.get_track(track_id)
    if track is None:
        raise HTTPException(404, "Track not found")
    return asdict(track)
