"""
Periodic scheduler for the batch expiration tasks.

Each cycle enqueues whichever batch tasks are due and then drains the
queue. Draining runs in a worker thread so the event loop stays free for
stop() and signal handling.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from signal_autoclose.domain.models import utc_now
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.tasks.definitions import TaskName
from signal_autoclose.tasks.queue import InMemoryTaskQueue

logger = get_logger(__name__)


@dataclass
class ScheduledTask:
    name: TaskName
    interval_seconds: int
    data: Dict[str, Any] = field(default_factory=dict)
    last_enqueued_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.last_enqueued_at is None:
            return True
        return (now - self.last_enqueued_at).total_seconds() >= self.interval_seconds


class ExpirationScheduler:
    """Enqueue-and-drain loop for check-all, grace and warning tasks."""

    def __init__(
        self,
        queue: InMemoryTaskQueue,
        schedule: List[ScheduledTask],
        tick_seconds: float = 5.0,
        clock: Clock = utc_now,
    ):
        self.queue = queue
        self.schedule = schedule
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.active = False
        self.cycles = 0

    @classmethod
    def from_config(cls, queue: InMemoryTaskQueue, expiration, clock: Clock = utc_now) -> "ExpirationScheduler":
        """Build the standard schedule from an ExpirationConfig section."""
        schedule = [
            ScheduledTask(TaskName.CHECK_ALL_EXPIRATIONS, expiration.check_interval_seconds),
            ScheduledTask(TaskName.CHECK_GRACE_PERIODS, expiration.grace_check_interval_seconds),
            ScheduledTask(
                TaskName.SEND_EXPIRATION_WARNINGS,
                expiration.warning_interval_seconds,
                {"minutes_before": expiration.warning_minutes_before},
            ),
        ]
        tick = min(t.interval_seconds for t in schedule)
        return cls(queue, schedule, tick_seconds=min(tick, 5), clock=clock)

    def enqueue_due(self) -> List[str]:
        """Enqueue every due task. Returns the job ids added."""
        now = self.clock()
        job_ids = []
        for task in self.schedule:
            if task.is_due(now):
                job = self.queue.add(task.name.value, task.data)
                task.last_enqueued_at = now
                job_ids.append(job.id)
        return job_ids

    def stop(self) -> None:
        self.active = False

    async def run(self, max_cycles: int = 0) -> None:
        """Loop until stop() is called, or for ``max_cycles`` cycles when > 0."""
        self.active = True
        logger.info(
            "Expiration scheduler started",
            tasks=[t.name.value for t in self.schedule],
            tick_seconds=self.tick_seconds,
        )
        try:
            while self.active:
                if max_cycles > 0 and self.cycles >= max_cycles:
                    logger.info("Scheduler max cycles reached", cycles=self.cycles)
                    break

                self.cycles += 1
                enqueued = self.enqueue_due()
                processed = await asyncio.to_thread(self.queue.drain)
                if enqueued or processed:
                    logger.info("SCHEDULER_CYCLE", cycle=self.cycles, enqueued=len(enqueued), processed=processed)

                if self.active and (max_cycles <= 0 or self.cycles < max_cycles):
                    await asyncio.sleep(self.tick_seconds)
        except asyncio.CancelledError:
            logger.info("Expiration scheduler cancelled")
            raise
        finally:
            self.active = False
            logger.info("Expiration scheduler stopped", cycles=self.cycles)
