"""
Component wiring.

build_engine assembles repositories, lifecycle services, the task queue and
the processor from a Config. The CLI, the HTTP server and tests all build
through here.
"""
from dataclasses import dataclass
from typing import Optional

from signal_autoclose.config.config import Config
from signal_autoclose.domain.models import utc_now
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.lifecycle.expiration_queries import ExpirationQueryService
from signal_autoclose.lifecycle.orchestrator import ExpirationOrchestrator
from signal_autoclose.lifecycle.preferences import PreferenceService
from signal_autoclose.lifecycle.signal_transitions import SignalTransitionService
from signal_autoclose.monitoring.alerts import AlertSystem
from signal_autoclose.notifications.service import NotificationService
from signal_autoclose.notifications.transports import TransportRegistry
from signal_autoclose.storage.db import Database, get_db
from signal_autoclose.storage.repository import (
    NotificationRepository,
    PositionRepository,
    PreferenceRepository,
    SignalRepository,
)
from signal_autoclose.tasks.processor import ExpirationTaskProcessor
from signal_autoclose.tasks.queue import InMemoryTaskQueue
from signal_autoclose.tasks.scheduler import ExpirationScheduler


@dataclass
class ExpirationEngine:
    config: Config
    db: Database
    signals: SignalRepository
    positions: PositionRepository
    queries: ExpirationQueryService
    transitions: SignalTransitionService
    notifications: NotificationService
    preferences: PreferenceService
    orchestrator: ExpirationOrchestrator
    queue: InMemoryTaskQueue
    processor: ExpirationTaskProcessor
    alerts: AlertSystem

    def scheduler(self) -> ExpirationScheduler:
        return ExpirationScheduler.from_config(self.queue, self.config.expiration, clock=self.orchestrator.clock)


def build_engine(
    config: Config,
    db: Optional[Database] = None,
    clock: Clock = utc_now,
    transports: Optional[TransportRegistry] = None,
    alerts: Optional[AlertSystem] = None,
) -> ExpirationEngine:
    db = db or get_db()

    signals = SignalRepository(db)
    positions = PositionRepository(db)
    queries = ExpirationQueryService(signals, positions, clock=clock)
    transitions = SignalTransitionService(signals, clock=clock)
    notifications = NotificationService(
        NotificationRepository(db),
        transports=transports or TransportRegistry.from_config(config.notifications),
        default_channel=config.notifications.default_channel,
        dedupe_window_minutes=config.notifications.dedupe_window_minutes,
        clock=clock,
    )
    preferences = PreferenceService(PreferenceRepository(db))
    queue = InMemoryTaskQueue(
        max_attempts=config.tasks.max_attempts,
        max_finished_jobs=config.tasks.max_finished_jobs,
        clock=clock,
    )
    orchestrator = ExpirationOrchestrator(
        queries, transitions, notifications, preferences, positions, task_queue=queue, clock=clock
    )
    alerts = alerts or AlertSystem.from_config(config.monitoring)
    processor = ExpirationTaskProcessor(
        queries,
        transitions,
        orchestrator,
        notifications,
        alerts=alerts,
        default_grace_period_minutes=config.expiration.default_grace_period_minutes,
        clock=clock,
    )
    processor.register(queue)

    return ExpirationEngine(
        config=config,
        db=db,
        signals=signals,
        positions=positions,
        queries=queries,
        transitions=transitions,
        notifications=notifications,
        preferences=preferences,
        orchestrator=orchestrator,
        queue=queue,
        processor=processor,
        alerts=alerts,
    )
