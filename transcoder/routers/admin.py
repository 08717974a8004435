import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Request

import config
from intake import clear_failed_jobs, retry_failed_jobs

logger = logging.getLogger(__name__)
router = APIRouter()


def require_admin(x_admin_token: str = Header(None)):
    if not config.ADMIN_TOKEN:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != config.ADMIN_TOKEN:
        raise HTTPException(403, "Invalid admin token")


@router.get("/admin/queue")
def queue_stats(request: Request, auth=Depends(require_admin)):
    job_queue = request.app.state.job_queue
    return {
        "mode": job_queue.mode,
        "counts": job_queue.counts(),
        "failed": [asdict(s) for s in job_queue.failed_jobs()],
    }


@router.post("/admin/retry-failed-jobs")
def retry_failed(request: Request, auth=Depends(require_admin)):
    summary = retry_failed_jobs(request.app.state.job_queue)
    return {
        "message": f"Retried {len(summary.retried)} failed jobs",
        "retriedCount": len(summary.retried),
        "skipped": summary.skipped,
        "totalFailed": summary.total_failed,
    }


@router.post("/admin/clear-failed-jobs")
def clear_failed(request: Request, auth=Depends(require_admin)):
    cleared = clear_failed_jobs(request.app.state.job_queue)
    return {"message": f"Cleared {cleared} failed jobs", "clearedCount": cleared}
