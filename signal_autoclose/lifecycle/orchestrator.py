"""
Expiration orchestrator.

Given a signal transition, resolves every affected open position:

    handle_expiration        per-user policy (ExpirationAction dispatch table)
    handle_cancellation      close all with SIGNAL_CANCELLED, no user override
    handle_grace_period_end  close all with GRACE_PERIOD_ENDED, then CLOSE signal

Notification preferences: on the expiration path an AUTO_CLOSE position is
closed without a POSITION_AUTO_CLOSED notification when the owner set
``notify_on_auto_close=False``, and EXTEND_GRACE_PERIOD stays silent when
``notify_on_grace_period_start=False``. Otherwise AUTO_CLOSE, NOTIFY_ONLY and
EXTEND_GRACE_PERIOD send exactly one notification per position and
DO_NOTHING sends none. Cancellation and grace-period end always
notify.

Failure isolation: an exception while processing one position is recorded
in the result's ``errors``/``results`` and the loop moves on. There is no
transaction spanning positions; a signal may reach a terminal state while
some of its positions failed, and the result says which.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from signal_autoclose.domain.models import (
    AutoCloseReason,
    CopiedPosition,
    ExpirationAction,
    ExpirationHandlerResult,
    PositionCloseResult,
    PositionStatus,
    Signal,
    SignalOutcome,
    UserExpirationPreference,
    utc_now,
)
from signal_autoclose.domain.protocols import Clock, TaskHandle, TaskQueue
from signal_autoclose.lifecycle.expiration_queries import ExpirationQueryService
from signal_autoclose.lifecycle.preferences import PreferenceService
from signal_autoclose.lifecycle.signal_transitions import SignalTransitionService
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.notifications.service import NotificationService
from signal_autoclose.storage.repository import PositionRepository
from signal_autoclose.tasks.definitions import TaskName

logger = get_logger(__name__)

ALREADY_CLOSED = "already closed"


@dataclass(frozen=True)
class ActionOutcome:
    """What one policy handler did to one position."""
    result: PositionCloseResult
    closed: bool = False
    notified: bool = False


PolicyHandler = Callable[[CopiedPosition, Signal, UserExpirationPreference], ActionOutcome]


class ExpirationOrchestrator:
    """Policy engine for signal expiration, cancellation and grace-period end."""

    def __init__(
        self,
        queries: ExpirationQueryService,
        transitions: SignalTransitionService,
        notifications: NotificationService,
        preferences: PreferenceService,
        positions: PositionRepository,
        task_queue: Optional[TaskQueue] = None,
        clock: Clock = utc_now,
    ):
        self.queries = queries
        self.transitions = transitions
        self.notifications = notifications
        self.preferences = preferences
        self.positions = positions
        self.task_queue = task_queue
        self.clock = clock

        self.policy_handlers: Dict[ExpirationAction, PolicyHandler] = {
            ExpirationAction.AUTO_CLOSE: self._auto_close,
            ExpirationAction.NOTIFY_ONLY: self._notify_only,
            ExpirationAction.EXTEND_GRACE_PERIOD: self._extend_grace_period,
            ExpirationAction.DO_NOTHING: self._do_nothing,
        }

    # ------------------------------------------------------------------
    # Position closure
    # ------------------------------------------------------------------

    def close_position(self, position: CopiedPosition, reason: AutoCloseReason) -> bool:
        """
        OPEN → AUTO_CLOSED with the given reason.

        Returns False without touching the record when the position is no
        longer OPEN.
        """
        closed_at = self.clock()
        affected = self.positions.close_if_open(position.id, PositionStatus.AUTO_CLOSED, reason, closed_at)
        if affected == 0:
            logger.info("Position already closed, skipping", position_id=position.id, reason=reason.value)
            return False

        position.status = PositionStatus.AUTO_CLOSED
        position.auto_close_reason = reason
        position.closed_at = closed_at
        logger.info(
            "POSITION_AUTO_CLOSED",
            position_id=position.id,
            signal_id=position.signal_id,
            user_id=position.user_id,
            reason=reason.value,
        )
        return True

    # ------------------------------------------------------------------
    # Expiration policy handlers
    # ------------------------------------------------------------------

    def _auto_close(self, position, signal, preference) -> ActionOutcome:
        reason = AutoCloseReason.SIGNAL_EXPIRED
        if not self.close_position(position, reason):
            return ActionOutcome(PositionCloseResult(position.id, position.user_id, False, reason, ALREADY_CLOSED))
        notified = False
        if preference.notify_on_auto_close:
            self.notifications.notify_auto_closed(position.user_id, signal, position, reason)
            notified = True
        return ActionOutcome(
            PositionCloseResult(position.id, position.user_id, True, reason),
            closed=True,
            notified=notified,
        )

    def _notify_only(self, position, signal, preference) -> ActionOutcome:
        self.notifications.notify_expired_no_action(position.user_id, signal, position)
        return ActionOutcome(
            PositionCloseResult(position.id, position.user_id, True, AutoCloseReason.USER_MANUAL),
            notified=True,
        )

    def _extend_grace_period(self, position, signal, preference) -> ActionOutcome:
        # Informational only; the signal's own grace window is not moved
        notified = False
        if preference.notify_on_grace_period_start:
            self.notifications.warn_grace_period_started(
                position.user_id, signal, position, preference.grace_period_minutes
            )
            notified = True
        return ActionOutcome(
            PositionCloseResult(position.id, position.user_id, True, AutoCloseReason.USER_MANUAL),
            notified=notified,
        )

    def _do_nothing(self, position, signal, preference) -> ActionOutcome:
        return ActionOutcome(PositionCloseResult(position.id, position.user_id, True, AutoCloseReason.USER_MANUAL))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _run(
        self,
        signal: Signal,
        reason: AutoCloseReason,
        handler: Callable[[CopiedPosition], ActionOutcome],
    ) -> ExpirationHandlerResult:
        open_positions = self.queries.open_positions_for_signal(signal.id)
        result = ExpirationHandlerResult(
            signal_id=signal.id,
            processed_at=self.clock(),
            positions_processed=len(open_positions),
        )

        for position in open_positions:
            try:
                outcome = handler(position)
            except Exception as e:
                error_message = str(e) or type(e).__name__
                result.errors.append(f"Position {position.id}: {error_message}")
                result.results.append(
                    PositionCloseResult(position.id, position.user_id, False, reason, error_message)
                )
                logger.error(
                    "Position processing failed",
                    signal_id=signal.id,
                    position_id=position.id,
                    user_id=position.user_id,
                    error=error_message,
                    error_type=type(e).__name__,
                )
                continue

            result.results.append(outcome.result)
            if outcome.closed:
                result.positions_closed += 1
            if outcome.notified:
                result.positions_notified += 1

        return result

    def handle_expiration(self, signal: Signal) -> ExpirationHandlerResult:
        """Apply each position owner's preference to the expired signal."""
        logger.info("Handling expiration", signal_id=signal.id)

        def process(position: CopiedPosition) -> ActionOutcome:
            preference = self.preferences.get_or_create(position.user_id)
            handler = self.policy_handlers.get(preference.default_action, self._do_nothing)
            return handler(position, signal, preference)

        result = self._run(signal, AutoCloseReason.SIGNAL_EXPIRED, process)
        self._log_result("EXPIRATION_HANDLED", result)
        return result

    def handle_cancellation(self, signal: Signal) -> ExpirationHandlerResult:
        """Close every open position; provider cancellation overrides user policy."""
        logger.info("Handling cancellation", signal_id=signal.id)
        reason = AutoCloseReason.SIGNAL_CANCELLED

        def process(position: CopiedPosition) -> ActionOutcome:
            if not self.close_position(position, reason):
                return ActionOutcome(PositionCloseResult(position.id, position.user_id, False, reason, ALREADY_CLOSED))
            self.notifications.notify_cancelled(position.user_id, signal, position)
            return ActionOutcome(
                PositionCloseResult(position.id, position.user_id, True, reason), closed=True, notified=True
            )

        result = self._run(signal, reason, process)
        self._log_result("CANCELLATION_HANDLED", result)
        return result

    def handle_grace_period_end(self, signal: Signal) -> ExpirationHandlerResult:
        """Close every still-open position, then close the signal itself."""
        logger.info("Handling grace period end", signal_id=signal.id)
        reason = AutoCloseReason.GRACE_PERIOD_ENDED

        def process(position: CopiedPosition) -> ActionOutcome:
            if not self.close_position(position, reason):
                return ActionOutcome(PositionCloseResult(position.id, position.user_id, False, reason, ALREADY_CLOSED))
            self.notifications.notify_auto_closed(position.user_id, signal, position, reason)
            return ActionOutcome(
                PositionCloseResult(position.id, position.user_id, True, reason), closed=True, notified=True
            )

        result = self._run(signal, reason, process)
        self.transitions.mark_closed(signal.id, SignalOutcome.EXPIRED)
        self._log_result("GRACE_PERIOD_END_HANDLED", result)
        return result

    def _log_result(self, event: str, result: ExpirationHandlerResult) -> None:
        log = logger.warning if result.has_errors else logger.info
        log(
            event,
            signal_id=result.signal_id,
            positions_processed=result.positions_processed,
            positions_closed=result.positions_closed,
            positions_notified=result.positions_notified,
            error_count=len(result.errors),
        )

    # ------------------------------------------------------------------
    # Task enqueue helpers
    # ------------------------------------------------------------------

    def _enqueue(self, name: TaskName, data: dict) -> TaskHandle:
        if self.task_queue is None:
            raise RuntimeError("No task queue configured")
        job = self.task_queue.add(name.value, data)
        logger.debug("Task queued", task=name.value, job_id=job.id)
        return job

    def queue_expiration_check(self, signal_id: str, grace_period_minutes: Optional[int] = None) -> TaskHandle:
        data = {"signal_id": signal_id}
        if grace_period_minutes is not None:
            data["grace_period_minutes"] = grace_period_minutes
        return self._enqueue(TaskName.CHECK_SIGNAL_EXPIRATION, data)

    def queue_batch_expiration_check(self) -> TaskHandle:
        return self._enqueue(TaskName.CHECK_ALL_EXPIRATIONS, {})

    def queue_grace_period_check(self) -> TaskHandle:
        return self._enqueue(TaskName.CHECK_GRACE_PERIODS, {})

    def queue_expiration_warnings(self, minutes_before: int) -> TaskHandle:
        return self._enqueue(TaskName.SEND_EXPIRATION_WARNINGS, {"minutes_before": minutes_before})

    def queue_signal_cancellation(self, signal_id: str) -> TaskHandle:
        return self._enqueue(TaskName.HANDLE_SIGNAL_CANCELLATION, {"signal_id": signal_id})
