"""Entry points used by the upload endpoint and by operators."""

import logging
import os
import uuid
from datetime import datetime, timezone

import database
from jobqueue import JobQueue
from models import RetrySummary, TranscodeJob

logger = logging.getLogger(__name__)


def register_upload(
    job_queue: JobQueue,
    temp_path: str,
    file_name: str,
    mime: str,
    size: int,
    user_id: str,
    upload_id: str | None = None,
    request_id: str | None = None,
) -> tuple[str, str]:
    """Create the Queued upload row for a stored temp file and enqueue its transcode.

    Returns ``(upload_id, job_id)``.
    """
    upload_id = upload_id or str(uuid.uuid4())
    database.create_upload(upload_id, user_id, file_name, mime, size, temp_path)

    job = TranscodeJob(
        upload_id=upload_id,
        user_id=user_id,
        temp_path=temp_path,
        temp_file_name=os.path.basename(temp_path),
        year_month=datetime.now(timezone.utc).strftime("%Y-%m"),
        request_id=request_id,
    )
    job_id = job_queue.enqueue(job)
    logger.info(f"Upload registered: upload_id={upload_id} job_id={job_id} file={temp_path}")
    return upload_id, job_id


def _prepare_retry(job: TranscodeJob) -> bool:
    if not os.path.isfile(job.temp_path):
        logger.warning(f"Not retrying upload {job.upload_id}: temp file {job.temp_path} is gone")
        return False
    database.reset_upload_for_retry(job.upload_id)
    return True


def retry_failed_jobs(job_queue: JobQueue) -> RetrySummary:
    summary = job_queue.retry_failed(prepare=_prepare_retry)
    logger.info(
        f"Retried {len(summary.retried)} of {summary.total_failed} failed jobs "
        f"({len(summary.skipped)} skipped, temp file missing)"
    )
    return summary


def clear_failed_jobs(job_queue: JobQueue) -> int:
    cleared = job_queue.clear_failed()
    logger.info(f"Cleared {cleared} failed jobs")
    return cleared
