"""Transcode job queue with a durable Redis backend and an in-process fallback.

The backend is chosen once at startup by :func:`create_job_queue`. Both
backends feed the same worker pool, so a job accepted in degraded mode is
really transcoded; it just isn't durable and isn't retried.
"""

import json
import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

import redis

import config
from errors import QueueFullError
from models import ClaimedJob, JobStatus, RetrySummary, TranscodeJob

logger = logging.getLogger(__name__)

DURABLE = "durable"
DEGRADED = "degraded"

TERMINAL_STATES = ("completed", "failed")


def _now_ms() -> int:
    return int(time.time() * 1000)


def backoff_delay_ms(attempts_made: int, base_ms: int = config.JOB_BACKOFF_MS) -> int:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_ms * (2 ** max(attempts_made - 1, 0))


class JobQueue(Protocol):
    mode: str

    def enqueue(self, job: TranscodeJob) -> str: ...

    def get_status(self, job_id: str) -> JobStatus | None: ...

    def claim(self, timeout: float = 1.0) -> ClaimedJob | None: ...

    def update_progress(self, job_id: str, progress: int) -> None: ...

    def complete(self, job_id: str, result: dict | None = None) -> None: ...

    def fail(self, job_id: str, reason: str, retryable: bool = True) -> bool: ...

    def failed_jobs(self) -> list[JobStatus]: ...

    def retry_failed(self, prepare: Callable[[TranscodeJob], bool] | None = None) -> RetrySummary: ...

    def clear_failed(self) -> int: ...

    def counts(self) -> dict: ...

    def recover_stalled(self) -> int: ...


class InMemoryJobQueue:
    """Degraded-mode queue: bounded, process-local, single attempt per job."""

    mode = DEGRADED

    def __init__(
        self,
        maxsize: int = config.MEMORY_QUEUE_SIZE,
        keep_completed: int = config.KEEP_COMPLETED,
        keep_failed: int = config.KEEP_FAILED,
    ):
        self._pending: queue.Queue[str] = queue.Queue(maxsize=maxsize)
        self._jobs: dict[str, dict] = {}
        self._completed: deque[str] = deque()
        self._failed: deque[str] = deque()
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._lock = threading.Lock()

    def _new_id(self, base: str) -> str:
        job_id, n = base, 1
        while job_id in self._jobs:
            n += 1
            job_id = f"{base}:{n}"
        return job_id

    def enqueue(self, job: TranscodeJob) -> str:
        with self._lock:
            job_id = self._new_id(job.upload_id)
            self._jobs[job_id] = {
                "data": job,
                "state": "waiting",
                "progress": 0,
                "attempts_made": 0,
                "failed_reason": None,
                "result": None,
                "created_at": _now_ms(),
                "processed_on": None,
                "finished_on": None,
            }
            try:
                self._pending.put_nowait(job_id)
            except queue.Full:
                del self._jobs[job_id]
                raise QueueFullError(f"In-memory queue is full ({self._pending.maxsize} jobs)")
        logger.info(f"Queued job {job_id} in degraded mode for upload {job.upload_id}")
        return job_id

    def _status(self, job_id: str, rec: dict) -> JobStatus:
        return JobStatus(
            id=job_id,
            state=rec["state"],
            progress=rec["progress"],
            failed_reason=rec["failed_reason"],
            attempts_made=rec["attempts_made"],
            data=rec["data"].to_dict(),
            processed_on=rec["processed_on"],
            finished_on=rec["finished_on"],
            result=rec["result"],
        )

    def get_status(self, job_id: str) -> JobStatus | None:
        with self._lock:
            rec = self._jobs.get(job_id)
            return self._status(job_id, rec) if rec else None

    def claim(self, timeout: float = 1.0) -> ClaimedJob | None:
        try:
            job_id = self._pending.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec is None:
                return None
            rec["state"] = "active"
            rec["attempts_made"] += 1
            rec["processed_on"] = _now_ms()
            return ClaimedJob(id=job_id, data=rec["data"], attempts_made=rec["attempts_made"], max_attempts=1)

    def update_progress(self, job_id: str, progress: int) -> None:
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec is not None:
                rec["progress"] = max(rec["progress"], progress)

    def _retire(self, job_id: str, history: deque, keep: int) -> None:
        history.append(job_id)
        while len(history) > keep:
            self._jobs.pop(history.popleft(), None)

    def complete(self, job_id: str, result: dict | None = None) -> None:
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec is None:
                return
            rec.update(state="completed", progress=100, result=result, finished_on=_now_ms())
            self._retire(job_id, self._completed, self._keep_completed)

    def fail(self, job_id: str, reason: str, retryable: bool = True) -> bool:
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec is None:
                return False
            rec.update(state="failed", failed_reason=reason, finished_on=_now_ms())
            self._retire(job_id, self._failed, self._keep_failed)
        return False

    def failed_jobs(self) -> list[JobStatus]:
        with self._lock:
            return [self._status(j, self._jobs[j]) for j in self._failed if j in self._jobs]

    def retry_failed(self, prepare: Callable[[TranscodeJob], bool] | None = None) -> RetrySummary:
        # Operator retries only act on the durable backend's failed list
        return RetrySummary(total_failed=0)

    def clear_failed(self) -> int:
        return 0

    def counts(self) -> dict:
        with self._lock:
            states = [rec["state"] for rec in self._jobs.values()]
        return {s: states.count(s) for s in ("waiting", "active", "delayed", "completed", "failed")}

    def recover_stalled(self) -> int:
        return 0


class RedisJobQueue:
    """Durable queue on Redis lists, sorted sets and hashes.

    Workers claim with BLMOVE from ``{name}:wait`` onto ``{name}:active``, so a
    claimed id is always in one of the two lists. Retries wait in the ``{name}:delayed``
    sorted set until their backoff has elapsed, and finished jobs are kept in
    bounded ``{name}:completed`` / ``{name}:failed`` history lists.
    """

    mode = DURABLE

    def __init__(
        self,
        client: redis.Redis,
        name: str = config.QUEUE_NAME,
        attempts: int = config.JOB_ATTEMPTS,
        backoff_ms: int = config.JOB_BACKOFF_MS,
        keep_completed: int = config.KEEP_COMPLETED,
        keep_failed: int = config.KEEP_FAILED,
    ):
        self.redis = client
        self.name = name
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.wait_key = f"{name}:wait"
        self.active_key = f"{name}:active"
        self.delayed_key = f"{name}:delayed"
        self.completed_key = f"{name}:completed"
        self.failed_key = f"{name}:failed"

    def _job_key(self, job_id: str) -> str:
        return f"{self.name}:job:{job_id}"

    def enqueue(self, job: TranscodeJob) -> str:
        payload = json.dumps(job.to_dict())
        job_id, n = job.upload_id, 1
        # Claim an unused id; a retried upload gets ":2", ":3", ...
        while not self.redis.hsetnx(self._job_key(job_id), "data", payload):
            n += 1
            job_id = f"{job.upload_id}:{n}"

        pipe = self.redis.pipeline()
        pipe.hset(
            self._job_key(job_id),
            mapping={
                "state": "waiting",
                "progress": 0,
                "attempts_made": 0,
                "max_attempts": self.attempts,
                "priority": 1,
                "created_at": _now_ms(),
            },
        )
        pipe.lpush(self.wait_key, job_id)
        pipe.execute()
        logger.info(f"Queued job {job_id} for upload {job.upload_id}")
        return job_id

    def _status(self, job_id: str, fields: dict) -> JobStatus:
        return JobStatus(
            id=job_id,
            state=fields.get("state", "waiting"),
            progress=int(fields.get("progress", 0)),
            failed_reason=fields.get("failed_reason") or None,
            attempts_made=int(fields.get("attempts_made", 0)),
            data=json.loads(fields["data"]),
            processed_on=int(fields["processed_on"]) if fields.get("processed_on") else None,
            finished_on=int(fields["finished_on"]) if fields.get("finished_on") else None,
            result=json.loads(fields["result"]) if fields.get("result") else None,
        )

    def get_status(self, job_id: str) -> JobStatus | None:
        fields = self.redis.hgetall(self._job_key(job_id))
        if not fields or "data" not in fields:
            return None
        return self._status(job_id, fields)

    def _promote_delayed(self) -> None:
        due = self.redis.zrangebyscore(self.delayed_key, 0, _now_ms())
        for job_id in due:
            # zrem succeeds for exactly one caller when several workers race
            if self.redis.zrem(self.delayed_key, job_id):
                pipe = self.redis.pipeline()
                pipe.hset(self._job_key(job_id), "state", "waiting")
                pipe.lpush(self.wait_key, job_id)
                pipe.execute()

    def claim(self, timeout: float = 1.0) -> ClaimedJob | None:
        self._promote_delayed()
        # The id moves to the active list in the same step it leaves the wait list
        job_id = self.redis.blmove(self.wait_key, self.active_key, max(1, int(timeout)), "RIGHT", "LEFT")
        if job_id is None:
            return None

        pipe = self.redis.pipeline()
        pipe.hset(self._job_key(job_id), mapping={"state": "active", "processed_on": _now_ms()})
        pipe.hincrby(self._job_key(job_id), "attempts_made", 1)
        pipe.hgetall(self._job_key(job_id))
        fields = pipe.execute()[-1]

        if "data" not in fields:
            # cleared while waiting
            pipe = self.redis.pipeline()
            pipe.lrem(self.active_key, 0, job_id)
            pipe.delete(self._job_key(job_id))
            pipe.execute()
            return None

        return ClaimedJob(
            id=job_id,
            data=TranscodeJob.from_dict(json.loads(fields["data"])),
            attempts_made=int(fields["attempts_made"]),
            max_attempts=int(fields.get("max_attempts", self.attempts)),
        )

    def update_progress(self, job_id: str, progress: int) -> None:
        job_key = self._job_key(job_id)

        def _raise(pipe) -> None:
            current = int(pipe.hget(job_key, "progress") or 0)
            if progress > current:
                pipe.multi()
                pipe.hset(job_key, "progress", int(progress))

        # Progress never moves backwards, even when a retry starts over
        self.redis.transaction(_raise, job_key)

    def _trim(self, list_key: str, keep: int) -> None:
        expired = self.redis.lrange(list_key, keep, -1)
        if not expired:
            return
        pipe = self.redis.pipeline()
        for job_id in expired:
            pipe.delete(self._job_key(job_id))
        pipe.ltrim(list_key, 0, keep - 1)
        pipe.execute()

    def complete(self, job_id: str, result: dict | None = None) -> None:
        pipe = self.redis.pipeline()
        pipe.lrem(self.active_key, 0, job_id)
        pipe.hset(
            self._job_key(job_id),
            mapping={
                "state": "completed",
                "progress": 100,
                "finished_on": _now_ms(),
                "result": json.dumps(result or {}),
            },
        )
        pipe.lpush(self.completed_key, job_id)
        pipe.execute()
        self._trim(self.completed_key, self.keep_completed)

    def fail(self, job_id: str, reason: str, retryable: bool = True) -> bool:
        job_key = self._job_key(job_id)
        attempts_made = int(self.redis.hget(job_key, "attempts_made") or 0)
        max_attempts = int(self.redis.hget(job_key, "max_attempts") or self.attempts)

        pipe = self.redis.pipeline()
        pipe.lrem(self.active_key, 0, job_id)
        if retryable and attempts_made < max_attempts:
            delay = backoff_delay_ms(attempts_made, self.backoff_ms)
            pipe.hset(job_key, mapping={"state": "delayed", "failed_reason": reason})
            pipe.zadd(self.delayed_key, {job_id: _now_ms() + delay})
            pipe.execute()
            logger.warning(
                f"Job {job_id} attempt {attempts_made}/{max_attempts} failed, retrying in {delay}ms: {reason}"
            )
            return True

        pipe.hset(job_key, mapping={"state": "failed", "failed_reason": reason, "finished_on": _now_ms()})
        pipe.lpush(self.failed_key, job_id)
        pipe.execute()
        self._trim(self.failed_key, self.keep_failed)
        return False

    def failed_jobs(self) -> list[JobStatus]:
        statuses = []
        for job_id in self.redis.lrange(self.failed_key, 0, -1):
            status = self.get_status(job_id)
            if status is not None:
                statuses.append(status)
        return statuses

    def retry_failed(self, prepare: Callable[[TranscodeJob], bool] | None = None) -> RetrySummary:
        """Re-enqueue every failed job as a fresh job.

        ``prepare`` may veto a retry (for example when the temp file is gone);
        vetoed jobs stay in the failed list.
        """
        failed = self.failed_jobs()
        summary = RetrySummary(total_failed=len(failed))
        for status in failed:
            job = TranscodeJob.from_dict(status.data)
            if prepare is not None and not prepare(job):
                summary.skipped.append(status.id)
                continue
            summary.retried.append(self.enqueue(job))
            pipe = self.redis.pipeline()
            pipe.lrem(self.failed_key, 0, status.id)
            pipe.delete(self._job_key(status.id))
            pipe.execute()
        return summary

    def clear_failed(self) -> int:
        job_ids = self.redis.lrange(self.failed_key, 0, -1)
        pipe = self.redis.pipeline()
        for job_id in job_ids:
            pipe.delete(self._job_key(job_id))
        pipe.delete(self.failed_key)
        pipe.execute()
        return len(job_ids)

    def counts(self) -> dict:
        pipe = self.redis.pipeline()
        pipe.llen(self.wait_key)
        pipe.llen(self.active_key)
        pipe.zcard(self.delayed_key)
        pipe.llen(self.completed_key)
        pipe.llen(self.failed_key)
        waiting, active, delayed, completed, failed = pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }

    def recover_stalled(self) -> int:
        """Put jobs left active by a crashed process back at the head of the queue.

        Only safe at startup, before this process's workers begin claiming.
        """
        recovered = 0
        while True:
            job_id = self.redis.lmove(self.active_key, self.wait_key, "LEFT", "RIGHT")
            if job_id is None:
                break
            self.redis.hset(self._job_key(job_id), "state", "waiting")
            recovered += 1
        if recovered:
            logger.warning(f"Re-queued {recovered} stalled job(s) on startup")
        return recovered


def probe_redis(url: str, timeout: float = config.REDIS_PROBE_TIMEOUT) -> bool:
    try:
        probe = redis.from_url(url, socket_connect_timeout=timeout, socket_timeout=timeout)
    except ValueError as e:
        logger.warning(f"Invalid REDIS_URL, using degraded mode: {e}")
        return False
    try:
        probe.ping()
        return True
    except (redis.exceptions.RedisError, OSError) as e:
        logger.warning(f"Redis connection failed, using degraded mode: {e}")
        return False
    finally:
        probe.close()


def create_job_queue(
    redis_url: str | None = None,
    disabled: bool | None = None,
    probe_timeout: float | None = None,
) -> JobQueue:
    """Pick the queue backend for this process's lifetime."""
    redis_url = config.REDIS_URL if redis_url is None else redis_url
    disabled = config.REDIS_DISABLED if disabled is None else disabled
    probe_timeout = config.REDIS_PROBE_TIMEOUT if probe_timeout is None else probe_timeout

    if disabled or not redis_url:
        logger.warning("Queue: degraded mode (Redis disabled or REDIS_URL not set)")
        return InMemoryJobQueue()

    if not probe_redis(redis_url, probe_timeout):
        logger.warning("Queue: degraded mode (in-memory, Redis unavailable)")
        return InMemoryJobQueue()

    logger.info("Queue: durable mode (Redis available)")
    client = redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=probe_timeout)
    return RedisJobQueue(client)
