import logging
import threading

import redis

import config
from errors import is_retryable
from jobqueue import JobQueue
from models import ClaimedJob
from pipeline import TranscodePipeline

logger = logging.getLogger(__name__)


class WorkerPool:
    """Fixed-size pool of threads that claim jobs and run the transcode pipeline.

    Each thread handles one job at a time; independent jobs run concurrently up
    to ``concurrency``. Jobs are never cancelled mid-run: ``stop`` waits for
    in-flight jobs to finish (up to ``timeout`` seconds).
    """

    def __init__(
        self,
        job_queue: JobQueue,
        pipeline: TranscodePipeline,
        concurrency: int = config.WORKER_CONCURRENCY,
        poll_timeout: float = 1.0,
        error_backoff: float = 10.0,
    ):
        self.job_queue = job_queue
        self.pipeline = pipeline
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.error_backoff = error_backoff
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def _process(self, job: ClaimedJob) -> None:
        logger.info(f"Processing job {job.id} for upload {job.data.upload_id}")

        def report(progress: int) -> None:
            self.job_queue.update_progress(job.id, progress)

        try:
            result = self.pipeline.run(job, report)
        except Exception as e:
            will_retry = self.job_queue.fail(job.id, str(e) or e.__class__.__name__, retryable=is_retryable(e))
            if not will_retry:
                logger.error(f"Job {job.id} failed permanently: {e}")
            return

        self.job_queue.complete(job.id, result)
        logger.info(f"Job {job.id} completed: track {result['trackId']} ready")

    def _loop(self) -> None:
        name = threading.current_thread().name
        logger.info(f"Worker {name} started")
        while not self._stop_event.is_set():
            try:
                job = self.job_queue.claim(timeout=self.poll_timeout)
                if job is not None:
                    self._process(job)
            except redis.exceptions.RedisError as e:
                logger.error(f"Worker {name} lost the broker: {e}", exc_info=True)
                self._stop_event.wait(timeout=self.error_backoff)
            except Exception as e:
                logger.error(f"Worker loop error: {e}", exc_info=True)
                self._stop_event.wait(timeout=self.error_backoff)
        logger.info(f"Worker {name} stopped")

    def start(self) -> None:
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, daemon=True, name=f"transcode-worker-{i}")
            for i in range(self.concurrency)
        ]
        for t in self._threads:
            t.start()
        logger.info(f"Started {self.concurrency} worker(s) on the {self.job_queue.mode} queue")

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)
