import threading
import time

import pytest

import database
from conftest import FakeTranscoder
from errors import InputError, TranscodeError
from jobqueue import InMemoryJobQueue, RedisJobQueue
from models import ClaimedJob
from worker import WorkerPool


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class StubPipeline:
    def __init__(self, error=None):
        self.error = error
        self.jobs = []

    def run(self, job, report_progress):
        self.jobs.append(job.id)
        report_progress(50)
        if self.error is not None:
            raise self.error
        return {"success": True, "trackId": job.data.upload_id}


def _process_one(job_queue, pipeline):
    pool = WorkerPool(job_queue, pipeline, concurrency=1)
    job = job_queue.claim(timeout=1)
    pool._process(job)
    return job


def test_process_completes_job(make_upload):
    q = InMemoryJobQueue()
    q.enqueue(make_upload())
    job = _process_one(q, StubPipeline())
    status = q.get_status(job.id)
    assert status.state == "completed"
    assert status.result == {"success": True, "trackId": "up-1"}


def test_process_records_failure(make_upload):
    q = InMemoryJobQueue()
    q.enqueue(make_upload())
    job = _process_one(q, StubPipeline(error=InputError("Temp file is empty (0 bytes)")))
    status = q.get_status(job.id)
    assert status.state == "failed"
    assert status.failed_reason == "Temp file is empty (0 bytes)"


def test_process_schedules_retry_on_durable_queue(redis_client, make_upload):
    q = RedisJobQueue(redis_client, name="worker-test", attempts=3, backoff_ms=1000)
    q.enqueue(make_upload())
    job = _process_one(q, StubPipeline(error=TranscodeError("ffmpeg died")))
    assert q.get_status(job.id).state == "delayed"


def test_process_non_retryable_error_skips_retries(redis_client, make_upload):
    q = RedisJobQueue(redis_client, name="worker-test", attempts=3, backoff_ms=1000)
    q.enqueue(make_upload())
    job = _process_one(q, StubPipeline(error=InputError("Temp file not found")))
    status = q.get_status(job.id)
    assert status.state == "failed"
    assert status.attempts_made == 1


def test_pool_runs_jobs_concurrently_without_mixing_artifacts(make_upload, make_pipeline, storage):
    q = InMemoryJobQueue()
    ids = ["up-a", "up-b", "up-c"]
    for upload_id in ids:
        q.enqueue(make_upload(upload_id=upload_id, user_id=f"user-{upload_id}"))

    pool = WorkerPool(q, make_pipeline(), concurrency=2, poll_timeout=0.05)
    pool.start()
    try:
        assert pool.running
        assert wait_for(lambda: all(q.get_status(i).state in ("completed", "failed") for i in ids))
    finally:
        pool.stop(timeout=5)

    assert not pool.running
    for upload_id in ids:
        status = q.get_status(upload_id)
        assert status.state == "completed", status.failed_reason
        track = database.get_track(upload_id)
        assert track.owner_id == f"user-{upload_id}"
        for key in (track.audio_128_key, track.audio_320_key, track.waveform_json_key):
            assert key.startswith(f"user-{upload_id}/transcoded/{upload_id}/")
            assert storage.head_object(key) is not None
        assert database.get_upload(upload_id).status == "Completed"
    assert len(storage.list_objects()) == 9


def test_pool_keeps_running_after_a_failed_job(make_upload, make_pipeline):
    q = InMemoryJobQueue()
    q.enqueue(make_upload(upload_id="bad", content=b""))
    q.enqueue(make_upload(upload_id="good"))

    pool = WorkerPool(q, make_pipeline(), concurrency=1, poll_timeout=0.05)
    pool.start()
    try:
        assert wait_for(lambda: q.get_status("good").state == "completed")
    finally:
        pool.stop(timeout=5)

    assert q.get_status("bad").state == "failed"
    assert database.get_upload("bad").status == "Failed"


class FlakyQueue(InMemoryJobQueue):
    """Raises on the first claim, then behaves."""

    def __init__(self):
        super().__init__()
        self.claims = 0
        self.recovered = threading.Event()

    def claim(self, timeout=1.0):
        self.claims += 1
        if self.claims == 1:
            raise RuntimeError("claim exploded")
        self.recovered.set()
        return super().claim(timeout=timeout)


def test_pool_survives_claim_errors():
    q = FlakyQueue()
    pool = WorkerPool(q, StubPipeline(), concurrency=1, poll_timeout=0.05, error_backoff=0.05)
    pool.start()
    try:
        assert q.recovered.wait(timeout=5)
    finally:
        pool.stop(timeout=5)


def test_stop_without_start_is_harmless():
    pool = WorkerPool(InMemoryJobQueue(), StubPipeline(), concurrency=3)
    pool.stop(timeout=0.1)
    assert not pool.running


@pytest.mark.parametrize("concurrency,expected", [(0, 1), (1, 1), (4, 4)])
def test_concurrency_is_at_least_one(concurrency, expected):
    assert WorkerPool(InMemoryJobQueue(), StubPipeline(), concurrency=concurrency).concurrency == expected


def test_claimed_job_reports_last_attempt(make_upload):
    job = make_upload()
    assert ClaimedJob(id="x", data=job, attempts_made=3, max_attempts=3).is_last_attempt
    assert not ClaimedJob(id="x", data=job, attempts_made=1, max_attempts=3).is_last_attempt
