"""
Job queue abstraction.

Workers only see ``JobQueue``: ``enqueue`` a job (optionally delayed),
``consume`` one eligible job, and read ``counts`` for observability.
``RQJobQueue`` is the Redis-backed production queue and
``InMemoryJobQueue`` is a deterministic single-process queue used by tests
and local tooling.
"""
import heapq
import importlib
import itertools
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from redis import Redis
from rq import Queue, Worker
from rq.registry import FailedJobRegistry, FinishedJobRegistry, ScheduledJobRegistry, StartedJobRegistry

logger = structlog.get_logger(__name__)

COUNT_KEYS = ("waiting", "delayed", "active", "completed", "failed")


@dataclass
class Job:
    queue_name: str
    job_type: str
    payload: Dict
    attempt: int = 1
    delay: float = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = 0.0
    eligible_at: float = 0.0


def import_handler(path: str) -> Callable:
    module_name, _, attr = path.rpartition(".")
    return getattr(importlib.import_module(module_name), attr)


class JobQueue:
    """Contract shared by every queue backend."""

    def enqueue(self, queue_name: str, job_type: str, payload: Dict, delay: float = 0) -> Job:
        raise NotImplementedError

    def consume(self, queue_name: str) -> Optional[Job]:
        """Run at most one eligible job from ``queue_name``; return it, or None if idle."""
        raise NotImplementedError

    def counts(self, queue_name: str) -> Dict[str, int]:
        raise NotImplementedError


class RQJobQueue(JobQueue):
    """Redis/RQ backed queue. Job types resolve to dotted handler paths."""

    def __init__(self, job_paths: Dict[str, str], connection: Optional[Redis] = None,
                 redis_url: str = "redis://localhost:6379", default_timeout: int = 120):
        self.job_paths = job_paths
        self.connection = connection or Redis.from_url(redis_url)
        self.default_timeout = default_timeout

    def get_queue(self, queue_name: str) -> Queue:
        return Queue(queue_name, connection=self.connection, default_timeout=self.default_timeout)

    def enqueue(self, queue_name: str, job_type: str, payload: Dict, delay: float = 0) -> Job:
        func = self.job_paths[job_type]
        queue = self.get_queue(queue_name)
        meta = {"job_type": job_type}
        if delay > 0:
            rq_job = queue.enqueue_in(timedelta(seconds=delay), func, kwargs=payload, meta=meta)
        else:
            rq_job = queue.enqueue(func, kwargs=payload, meta=meta)
        logger.debug("job_enqueued", queue=queue_name, job_type=job_type, job_id=rq_job.id, delay=delay)
        return Job(queue_name=queue_name, job_type=job_type, payload=payload, delay=delay, id=rq_job.id)

    def consume(self, queue_name: str) -> Optional[Job]:
        queue = self.get_queue(queue_name)
        next_ids = queue.get_job_ids(0, 0)
        if not next_ids:
            return None
        rq_job = queue.fetch_job(next_ids[0])
        Worker([queue], connection=self.connection).work(burst=True, max_jobs=1)
        if rq_job is None:
            return None
        return Job(
            queue_name=queue_name,
            job_type=rq_job.meta.get("job_type", rq_job.func_name),
            payload=dict(rq_job.kwargs),
            id=rq_job.id,
        )

    def counts(self, queue_name: str) -> Dict[str, int]:
        queue = self.get_queue(queue_name)
        return {
            "waiting": queue.count,
            "delayed": len(ScheduledJobRegistry(queue=queue).get_job_ids()),
            "active": len(StartedJobRegistry(queue=queue).get_job_ids()),
            "completed": len(FinishedJobRegistry(queue=queue).get_job_ids()),
            "failed": len(FailedJobRegistry(queue=queue).get_job_ids()),
        }

    def worker_count(self) -> int:
        return len(Worker.all(connection=self.connection))


class InMemoryJobQueue(JobQueue):
    """
    Thread-safe queue held in process memory.

    Jobs are ordered by (eligible time, enqueue sequence), so immediate jobs
    come out FIFO and delayed jobs join the line when their time comes.
    ``dequeue`` leases a job for ``visibility_timeout`` seconds; a lease that
    runs out (the worker died) puts the job back with ``attempt`` + 1.

    Args:
        handlers: job_type -> callable taking the payload as keyword arguments
        clock: returns the current time in seconds
        visibility_timeout: lease length for dequeued jobs
        max_retries: queue-driven redeliveries after a handler raises
    """

    def __init__(self, handlers: Dict[str, Callable] = None, clock: Callable[[], float] = time.time,
                 visibility_timeout: float = 300, max_retries: Optional[Dict[str, int]] = None):
        self.handlers = dict(handlers or {})
        self.clock = clock
        self.visibility_timeout = visibility_timeout
        self.max_retries = dict(max_retries or {})
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._waiting: Dict[str, List[Tuple[float, int, Job]]] = {}
        self._active: Dict[str, Dict[str, Tuple[Job, float]]] = {}
        self._completed: Dict[str, List[Job]] = {}
        self._failed: Dict[str, List[Tuple[Job, str]]] = {}

    def enqueue(self, queue_name: str, job_type: str, payload: Dict, delay: float = 0) -> Job:
        now = self.clock()
        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload=json.loads(json.dumps(payload)),
            delay=delay,
            enqueued_at=now,
            eligible_at=now + max(delay, 0),
        )
        with self._lock:
            self._push(job)
        logger.debug("job_enqueued", queue=queue_name, job_type=job_type, job_id=job.id, delay=delay)
        return job

    def _push(self, job: Job) -> None:
        heapq.heappush(self._waiting.setdefault(job.queue_name, []), (job.eligible_at, next(self._seq), job))

    def _reclaim_expired(self, queue_name: str, now: float) -> None:
        active = self._active.get(queue_name, {})
        for job_id, (job, lease_until) in list(active.items()):
            if lease_until <= now:
                del active[job_id]
                job.attempt += 1
                job.eligible_at = now
                self._push(job)
                logger.warning("job_lease_expired", queue=queue_name, job_id=job_id, attempt=job.attempt)

    def dequeue(self, queue_name: str) -> Optional[Job]:
        now = self.clock()
        with self._lock:
            self._reclaim_expired(queue_name, now)
            waiting = self._waiting.get(queue_name)
            if not waiting or waiting[0][0] > now:
                return None
            _, _, job = heapq.heappop(waiting)
            self._active.setdefault(queue_name, {})[job.id] = (job, now + self.visibility_timeout)
            return job

    def complete(self, job: Job) -> None:
        with self._lock:
            self._active.get(job.queue_name, {}).pop(job.id, None)
            self._completed.setdefault(job.queue_name, []).append(job)

    def fail(self, job: Job, error: str) -> None:
        with self._lock:
            self._active.get(job.queue_name, {}).pop(job.id, None)
            if job.attempt <= self.max_retries.get(job.queue_name, 0):
                job.attempt += 1
                job.eligible_at = self.clock()
                self._push(job)
                return
            self._failed.setdefault(job.queue_name, []).append((job, error))

    def consume(self, queue_name: str) -> Optional[Job]:
        job = self.dequeue(queue_name)
        if job is None:
            return None
        handler = self.handlers.get(job.job_type)
        if handler is None:
            self.fail(job, "no handler registered for %s" % job.job_type)
            logger.error("job_handler_missing", queue=queue_name, job_type=job.job_type, job_id=job.id)
            return job
        try:
            handler(**job.payload)
        except Exception as exc:
            # same contract as an RQ worker: the failure is recorded on the job
            logger.exception("job_failed", queue=queue_name, job_type=job.job_type, job_id=job.id)
            self.fail(job, "%s: %s" % (type(exc).__name__, exc))
        else:
            self.complete(job)
        return job

    def drain(self, queue_name: str, limit: int = 1000) -> int:
        """Consume jobs until none is eligible. Returns how many ran."""
        ran = 0
        while ran < limit and self.consume(queue_name) is not None:
            ran += 1
        return ran

    def next_eligible_at(self, queue_name: str) -> Optional[float]:
        with self._lock:
            waiting = self._waiting.get(queue_name)
            return waiting[0][0] if waiting else None

    def waiting_jobs(self, queue_name: str) -> List[Job]:
        with self._lock:
            return [job for _, _, job in sorted(self._waiting.get(queue_name, []))]

    def failed_jobs(self, queue_name: str) -> List[Tuple[Job, str]]:
        with self._lock:
            return list(self._failed.get(queue_name, []))

    def counts(self, queue_name: str) -> Dict[str, int]:
        now = self.clock()
        with self._lock:
            waiting = self._waiting.get(queue_name, [])
            delayed = sum(1 for eligible_at, _, _ in waiting if eligible_at > now)
            return {
                "waiting": len(waiting) - delayed,
                "delayed": delayed,
                "active": len(self._active.get(queue_name, {})),
                "completed": len(self._completed.get(queue_name, [])),
                "failed": len(self._failed.get(queue_name, [])),
            }
