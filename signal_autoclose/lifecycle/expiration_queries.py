"""
Expiration queries.

Read-only questions about signal expiry and open positions. This is the
only place time comparisons are made, so "is this expired" has one answer.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from signal_autoclose.domain.models import (
    CopiedPosition,
    ExpirationCheckResult,
    ExpirationSummary,
    PositionStatus,
    Signal,
    SignalOutcome,
    SignalStatus,
    utc_now,
)
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.exceptions import NotFoundError
from signal_autoclose.storage.repository import PositionRepository, SignalRepository


class ExpirationQueryService:
    """Side-effect free expiration queries."""

    def __init__(
        self,
        signals: SignalRepository,
        positions: PositionRepository,
        clock: Clock = utc_now,
    ):
        self.signals = signals
        self.positions = positions
        self.clock = clock

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    def find_expired(self, now: Optional[datetime] = None) -> List[Signal]:
        """ACTIVE signals whose expires_at has been reached."""
        return self.signals.find(status=SignalStatus.ACTIVE, expires_at_lte=self._now(now))

    def find_in_grace_period(self, now: Optional[datetime] = None) -> List[Signal]:
        """EXPIRED signals whose grace window has ended and still await closing."""
        return self.signals.find(
            status=SignalStatus.EXPIRED,
            outcome=SignalOutcome.EXPIRED,
            grace_period_ends_at_lte=self._now(now),
        )

    def find_approaching(self, minutes_before: int, now: Optional[datetime] = None) -> List[Signal]:
        """ACTIVE signals with now < expires_at <= now + minutes_before."""
        now = self._now(now)
        return self.signals.find(
            status=SignalStatus.ACTIVE,
            expires_at_gt=now,
            expires_at_lte=now + timedelta(minutes=minutes_before),
        )

    def open_positions_for_signal(self, signal_id: str) -> List[CopiedPosition]:
        return self.positions.find(signal_id=signal_id, status=PositionStatus.OPEN)

    def open_positions_for_users(self, user_ids: List[str]) -> List[CopiedPosition]:
        if not user_ids:
            return []
        return self.positions.find(user_ids=list(user_ids), status=PositionStatus.OPEN)

    def get_signal(self, signal_id: str) -> Signal:
        signal = self.signals.get(signal_id)
        if signal is None:
            raise NotFoundError("Signal", signal_id)
        return signal

    def check_expiration(self, signal_id: str, now: Optional[datetime] = None) -> ExpirationCheckResult:
        """
        Compute the expiration status of one signal from its timestamps.

        Raises:
            NotFoundError: If the signal does not exist
        """
        signal = self.get_signal(signal_id)
        now = self._now(now)

        is_expired = signal.expires_at <= now
        is_in_grace_period = (
            is_expired
            and signal.grace_period_ends_at is not None
            and signal.grace_period_ends_at > now
        )

        return ExpirationCheckResult(
            signal_id=signal.id,
            status=signal.status,
            is_expired=is_expired,
            is_in_grace_period=is_in_grace_period,
            grace_period_ends_at=signal.grace_period_ends_at,
            open_positions_count=self.positions.count(signal.id, status=PositionStatus.OPEN),
        )

    def expiration_summary(self, now: Optional[datetime] = None) -> ExpirationSummary:
        """Counts of expired and grace-ended signals with their check results."""
        now = self._now(now)
        expired = self.find_expired(now)
        in_grace = self.find_in_grace_period(now)
        return ExpirationSummary(
            checked_at=now,
            total_expired=len(expired),
            total_in_grace_period=len(in_grace),
            signals=[self.check_expiration(s.id, now) for s in expired + in_grace],
        )
