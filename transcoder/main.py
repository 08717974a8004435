import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

import config
from database import init_db, ping
from jobqueue import create_job_queue
from pipeline import TranscodePipeline
from routers import admin, status
from storage import StorageError, create_storage
from worker import WorkerPool

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up transcoder")
    init_db()
    job_queue = create_job_queue()
    job_queue.recover_stalled()
    storage = create_storage()
    workers = WorkerPool(job_queue, TranscodePipeline(storage), concurrency=config.WORKER_CONCURRENCY)

    app.state.job_queue = job_queue
    app.state.storage = storage
    app.state.workers = workers
    workers.start()
    yield
    logger.info("Shutting down transcoder")
    workers.stop()


app = FastAPI(title="Mixora Transcoder", lifespan=lifespan)

app.include_router(status.router)
app.include_router(admin.router)


@app.get("/health")
def health(request: Request):
    job_queue = request.app.state.job_queue
    checks = {
        "db": "ok" if ping() else "fail",
        "queue": "ok" if job_queue.mode == "durable" else "degraded",
        "queue_mode": job_queue.mode,
        "workers": "ok" if request.app.state.workers.running else "fail",
        "storage": "ok",
    }
    try:
        request.app.state.storage.head_object("health-check")
    except StorageError as e:
        logger.error(f"Storage health check failed: {e}")
        checks["storage"] = "fail"
    checks["ok"] = checks["db"] == "ok" and checks["storage"] == "ok"
    return checks
