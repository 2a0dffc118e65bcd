"""
In-process task queue.

FIFO of named jobs with per-name handlers. Delivery is at-least-once: a job
whose handler raises is re-queued until ``max_attempts`` is exhausted, then
marked failed. Jobs are kept after completion so their status can be
polled by id until ``max_finished_jobs`` newer jobs have finished;
the oldest finished jobs are evicted first. Waiting jobs are never evicted.
"""
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional

from signal_autoclose.domain.models import utc_now
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.monitoring.logger import get_logger

logger = get_logger(__name__)


class JobState:
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    state: str = JobState.WAITING
    attempts_made: int = 0
    progress: int = 0
    returnvalue: Any = None
    failed_reason: Optional[str] = None
    created_on: Optional[datetime] = None
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None


JobHandler = Callable[[Dict[str, Any]], Any]


class InMemoryTaskQueue:
    """Single-process queue; handlers run on the caller's thread."""

    def __init__(self, max_attempts: int = 1, max_finished_jobs: int = 1000, clock: Clock = utc_now):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if max_finished_jobs < 1:
            raise ValueError("max_finished_jobs must be >= 1")
        self.max_attempts = max_attempts
        self.max_finished_jobs = max_finished_jobs
        self.clock = clock
        self._handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    def add(self, name: str, data: Optional[Dict[str, Any]] = None) -> Job:
        job = Job(id=str(uuid.uuid4()), name=name, data=dict(data or {}), created_on=self.clock())
        with self._lock:
            self._jobs[job.id] = job
            self._waiting.append(job.id)
        logger.debug("Job added", job_id=job.id, name=name)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def waiting_count(self) -> int:
        return len(self._waiting)

    def process_next(self) -> Optional[Job]:
        """Run the oldest waiting job. Returns None when the queue is empty."""
        with self._lock:
            if not self._waiting:
                return None
            job = self._jobs[self._waiting.popleft()]
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.processed_on = self.clock()

        logger.debug("Processing job", job_id=job.id, name=job.name, attempt=job.attempts_made)
        handler = self._handlers.get(job.name)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for job '{job.name}'")
            job.returnvalue = handler(job.data)
        except Exception as e:
            job.failed_reason = str(e) or type(e).__name__
            if job.attempts_made < self.max_attempts and handler is not None:
                job.state = JobState.WAITING
                with self._lock:
                    self._waiting.append(job.id)
                logger.warning(
                    "Job failed, re-queued",
                    job_id=job.id,
                    name=job.name,
                    attempt=job.attempts_made,
                    error=job.failed_reason,
                )
            else:
                job.state = JobState.FAILED
                job.finished_on = self.clock()
                self._retire(job)
                logger.error("JOB_FAILED", job_id=job.id, name=job.name, error=job.failed_reason)
            return job

        job.state = JobState.COMPLETED
        job.progress = 100
        job.failed_reason = None
        job.finished_on = self.clock()
        self._retire(job)
        logger.debug("Job completed", job_id=job.id, name=job.name)
        return job

    def _retire(self, job: Job) -> None:
        with self._lock:
            self._finished[job.id] = None
            while len(self._finished) > self.max_finished_jobs:
                evicted, _ = self._finished.popitem(last=False)
                self._jobs.pop(evicted, None)

    def job_count(self) -> int:
        return len(self._jobs)

    def drain(self, limit: Optional[int] = None) -> int:
        """Process waiting jobs until empty (or ``limit`` runs). Returns runs made."""
        runs = 0
        while limit is None or runs < limit:
            if self.process_next() is None:
                break
            runs += 1
        return runs
