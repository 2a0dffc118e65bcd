"""
Expiration task handlers.

Each handler takes a payload dict and returns a result dataclass. Batch
handlers never raise for a failing signal; they record it and move on.
Single-signal handlers turn any exception into ``TaskOutcome(success=False)``.
"""
from typing import Any, Callable, Dict, Optional

from signal_autoclose.domain.models import (
    BatchExpirationResult,
    GracePeriodBatchResult,
    SignalStatus,
    TaskOutcome,
    WarningsResult,
    utc_now,
)
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.exceptions import ValidationError
from signal_autoclose.lifecycle.expiration_queries import ExpirationQueryService
from signal_autoclose.lifecycle.orchestrator import ExpirationOrchestrator
from signal_autoclose.lifecycle.signal_transitions import SignalTransitionService
from signal_autoclose.monitoring.alerts import AlertSystem
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.notifications.service import NotificationService
from signal_autoclose.tasks.definitions import (
    CheckSignalExpirationPayload,
    HandleSignalCancellationPayload,
    SendExpirationWarningsPayload,
    TaskName,
)
from signal_autoclose.tasks.queue import InMemoryTaskQueue

logger = get_logger(__name__)


def _error_message(e: Exception) -> str:
    return str(e) or type(e).__name__


class ExpirationTaskProcessor:
    """Runs the five expiration tasks against the lifecycle services."""

    def __init__(
        self,
        queries: ExpirationQueryService,
        transitions: SignalTransitionService,
        orchestrator: ExpirationOrchestrator,
        notifications: NotificationService,
        alerts: Optional[AlertSystem] = None,
        default_grace_period_minutes: int = 30,
        clock: Clock = utc_now,
    ):
        self.queries = queries
        self.transitions = transitions
        self.orchestrator = orchestrator
        self.notifications = notifications
        self.alerts = alerts or AlertSystem()
        self.default_grace_period_minutes = default_grace_period_minutes
        self.clock = clock

        self.handlers: Dict[TaskName, Callable[[Dict[str, Any]], Any]] = {
            TaskName.CHECK_SIGNAL_EXPIRATION: self.check_signal_expiration,
            TaskName.CHECK_ALL_EXPIRATIONS: self.check_all_expirations,
            TaskName.CHECK_GRACE_PERIODS: self.check_grace_periods,
            TaskName.SEND_EXPIRATION_WARNINGS: self.send_expiration_warnings,
            TaskName.HANDLE_SIGNAL_CANCELLATION: self.handle_signal_cancellation,
        }

    def dispatch(self, name: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run the named task synchronously.

        Raises:
            ValidationError: If the task name is unknown
        """
        try:
            task = TaskName(name)
        except ValueError:
            raise ValidationError(f"Unknown task: {name}") from None
        return self.handlers[task](payload or {})

    def register(self, queue: InMemoryTaskQueue) -> None:
        """Bind every task name on the queue to this processor."""
        for task, handler in self.handlers.items():
            queue.register(task.value, handler)

    # ------------------------------------------------------------------
    # Single-signal tasks
    # ------------------------------------------------------------------

    def check_signal_expiration(self, data: Dict[str, Any]) -> TaskOutcome:
        try:
            payload = CheckSignalExpirationPayload.from_data(data)
            check = self.queries.check_expiration(payload.signal_id)
            if check.status != SignalStatus.ACTIVE or not check.is_expired:
                # Redelivery or not yet due: report state, change nothing
                return TaskOutcome(success=True, result=check)

            grace = payload.grace_period_minutes
            if grace is None:
                grace = self.default_grace_period_minutes
            signal = self.transitions.mark_expired(payload.signal_id, grace)
            return TaskOutcome(success=True, result=self.orchestrator.handle_expiration(signal))
        except Exception as e:
            logger.error(
                "Signal expiration check failed",
                signal_id=data.get("signal_id"),
                error=_error_message(e),
                error_type=type(e).__name__,
            )
            self.alerts.alert_task_failed(TaskName.CHECK_SIGNAL_EXPIRATION.value, _error_message(e), dict(data))
            return TaskOutcome(success=False, error=_error_message(e))

    def handle_signal_cancellation(self, data: Dict[str, Any]) -> TaskOutcome:
        try:
            payload = HandleSignalCancellationPayload.from_data(data)
            signal = self.transitions.cancel(payload.signal_id)
            return TaskOutcome(success=True, result=self.orchestrator.handle_cancellation(signal))
        except Exception as e:
            logger.error(
                "Signal cancellation failed",
                signal_id=data.get("signal_id"),
                error=_error_message(e),
                error_type=type(e).__name__,
            )
            self.alerts.alert_task_failed(TaskName.HANDLE_SIGNAL_CANCELLATION.value, _error_message(e), dict(data))
            return TaskOutcome(success=False, error=_error_message(e))

    # ------------------------------------------------------------------
    # Batch tasks
    # ------------------------------------------------------------------

    def check_all_expirations(self, data: Optional[Dict[str, Any]] = None) -> BatchExpirationResult:
        now = self.clock()
        logger.info("Starting batch expiration check", now=now.isoformat())
        result = BatchExpirationResult()

        for signal in self.queries.find_expired(now):
            try:
                expired = self.transitions.mark_expired(signal.id, self.default_grace_period_minutes)
                handled = self.orchestrator.handle_expiration(expired)
            except Exception as e:
                result.errors.append(f"Signal {signal.id}: {_error_message(e)}")
                result.error_count += 1
                logger.error("Signal expiration failed", signal_id=signal.id, error=_error_message(e))
                continue

            result.processed_count += 1
            result.closed_count += handled.positions_closed
            result.signal_results.append(handled)
            if handled.errors:
                result.errors.extend(handled.errors)
                result.error_count += len(handled.errors)

        logger.info(
            "BATCH_EXPIRATION_COMPLETE",
            processed=result.processed_count,
            closed=result.closed_count,
            errors=result.error_count,
        )
        self.alerts.alert_batch_errors(TaskName.CHECK_ALL_EXPIRATIONS.value, result.errors, result.processed_count)
        return result

    def check_grace_periods(self, data: Optional[Dict[str, Any]] = None) -> GracePeriodBatchResult:
        now = self.clock()
        logger.info("Starting grace period check", now=now.isoformat())
        result = GracePeriodBatchResult()

        for signal in self.queries.find_in_grace_period(now):
            try:
                handled = self.orchestrator.handle_grace_period_end(signal)
            except Exception as e:
                result.errors.append(f"Signal {signal.id}: {_error_message(e)}")
                logger.error("Grace period end failed", signal_id=signal.id, error=_error_message(e))
                continue

            result.processed_count += 1
            result.closed_count += handled.positions_closed
            result.signal_results.append(handled)
            result.errors.extend(handled.errors)

        logger.info(
            "GRACE_PERIOD_CHECK_COMPLETE",
            processed=result.processed_count,
            closed=result.closed_count,
            errors=len(result.errors),
        )
        self.alerts.alert_batch_errors(TaskName.CHECK_GRACE_PERIODS.value, result.errors, result.processed_count)
        return result

    def send_expiration_warnings(self, data: Dict[str, Any]) -> WarningsResult:
        payload = SendExpirationWarningsPayload.from_data(data)
        signals = self.queries.find_approaching(payload.minutes_before, self.clock())
        result = WarningsResult(signals_checked=len(signals))

        for signal in signals:
            for position in self.queries.open_positions_for_signal(signal.id):
                try:
                    self.notifications.warn_expiring(position.user_id, signal, position, payload.minutes_before)
                except Exception as e:
                    result.errors.append(f"Position {position.id}: {_error_message(e)}")
                    logger.error("Expiration warning failed", position_id=position.id, error=_error_message(e))
                    continue
                result.notifications_sent += 1

        logger.info(
            "EXPIRATION_WARNINGS_SENT",
            minutes_before=payload.minutes_before,
            signals_checked=result.signals_checked,
            notifications_sent=result.notifications_sent,
            errors=len(result.errors),
        )
        self.alerts.alert_batch_errors(TaskName.SEND_EXPIRATION_WARNINGS.value, result.errors, result.signals_checked)
        return result
