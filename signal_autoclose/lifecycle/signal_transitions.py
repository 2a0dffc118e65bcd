"""
Signal state machine.

    ACTIVE  → EXPIRED    mark_expired
    EXPIRED → CLOSED     mark_closed
    ACTIVE  → CANCELLED  cancel

Each transition is one conditional UPDATE on (id, status). A transition that
does not start from an allowed state is rejected, so a re-delivered task
cannot move a terminal signal again.
"""
from datetime import timedelta
from typing import Dict, FrozenSet

from signal_autoclose.domain.models import Signal, SignalOutcome, SignalStatus, utc_now
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.exceptions import InvalidTransitionError, NotFoundError
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.storage.repository import SignalRepository

logger = get_logger(__name__)


# target state -> states it may be entered from
ALLOWED_TRANSITIONS: Dict[SignalStatus, FrozenSet[SignalStatus]] = {
    SignalStatus.EXPIRED: frozenset({SignalStatus.ACTIVE}),
    SignalStatus.CLOSED: frozenset({SignalStatus.EXPIRED}),
    SignalStatus.CANCELLED: frozenset({SignalStatus.ACTIVE}),
}


class SignalTransitionService:
    """Owns every write to a signal's lifecycle fields."""

    def __init__(self, signals: SignalRepository, clock: Clock = utc_now):
        self.signals = signals
        self.clock = clock

    def _apply(self, signal_id: str, target: SignalStatus, values: dict) -> Signal:
        affected = self.signals.update_if_status(
            signal_id, ALLOWED_TRANSITIONS[target], {"status": target, **values}
        )
        if affected == 0:
            current = self.signals.get(signal_id)
            if current is None:
                raise NotFoundError("Signal", signal_id)
            raise InvalidTransitionError(signal_id, current.status.value, target.value)
        return self.signals.get(signal_id)

    def mark_expired(self, signal_id: str, grace_period_minutes: int = 0) -> Signal:
        """
        ACTIVE → EXPIRED with outcome EXPIRED.

        A positive grace period opens a grace window; otherwise the signal is
        stamped closed_at immediately.
        """
        now = self.clock()
        values = {"outcome": SignalOutcome.EXPIRED}
        if grace_period_minutes and grace_period_minutes > 0:
            values["grace_period_ends_at"] = now + timedelta(minutes=grace_period_minutes)
        else:
            values["closed_at"] = now

        signal = self._apply(signal_id, SignalStatus.EXPIRED, values)
        logger.info(
            "SIGNAL_EXPIRED",
            signal_id=signal_id,
            grace_period_minutes=grace_period_minutes or 0,
            grace_period_ends_at=signal.grace_period_ends_at.isoformat() if signal.grace_period_ends_at else None,
        )
        return signal

    def mark_closed(self, signal_id: str, outcome: SignalOutcome) -> Signal:
        """EXPIRED → CLOSED with the given outcome. Consumes the grace window."""
        signal = self._apply(
            signal_id,
            SignalStatus.CLOSED,
            {"outcome": outcome, "closed_at": self.clock(), "grace_period_ends_at": None},
        )
        logger.info("SIGNAL_CLOSED", signal_id=signal_id, outcome=outcome.value)
        return signal

    def cancel(self, signal_id: str) -> Signal:
        """ACTIVE → CANCELLED (provider initiated)."""
        signal = self._apply(
            signal_id,
            SignalStatus.CANCELLED,
            {"outcome": SignalOutcome.CANCELLED, "closed_at": self.clock()},
        )
        logger.info("SIGNAL_CANCELLED", signal_id=signal_id)
        return signal
