"""
Signal state machine: ACTIVE → EXPIRED → CLOSED, ACTIVE → CANCELLED.
"""
from datetime import timedelta

import pytest

from signal_autoclose.domain.models import SignalOutcome, SignalStatus
from signal_autoclose.exceptions import InvalidTransitionError, NotFoundError


def test_mark_expired_with_grace_opens_window(engine, make_signal, clock):
    signal = make_signal()

    expired = engine.transitions.mark_expired(signal.id, grace_period_minutes=30)

    assert expired.status == SignalStatus.EXPIRED
    assert expired.outcome == SignalOutcome.EXPIRED
    assert expired.grace_period_ends_at == clock() + timedelta(minutes=30)
    assert expired.closed_at is None


def test_mark_expired_without_grace_stamps_closed_at(engine, make_signal, clock):
    signal = make_signal()

    expired = engine.transitions.mark_expired(signal.id, grace_period_minutes=0)

    assert expired.status == SignalStatus.EXPIRED
    assert expired.grace_period_ends_at is None
    assert expired.closed_at == clock()


def test_mark_closed_clears_grace_window(engine, make_signal, clock):
    signal = make_signal()
    engine.transitions.mark_expired(signal.id, grace_period_minutes=30)
    clock.advance(minutes=31)

    closed = engine.transitions.mark_closed(signal.id, SignalOutcome.EXPIRED)

    assert closed.status == SignalStatus.CLOSED
    assert closed.outcome == SignalOutcome.EXPIRED
    assert closed.closed_at == clock()
    assert closed.grace_period_ends_at is None
    assert closed.is_terminal


def test_cancel_active_signal(engine, make_signal, clock):
    signal = make_signal(expires_in=timedelta(hours=4))

    cancelled = engine.transitions.cancel(signal.id)

    assert cancelled.status == SignalStatus.CANCELLED
    assert cancelled.outcome == SignalOutcome.CANCELLED
    assert cancelled.closed_at == clock()


class TestRejectedTransitions:

    def test_expire_twice_is_rejected(self, engine, make_signal):
        signal = make_signal()
        engine.transitions.mark_expired(signal.id, 30)

        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.transitions.mark_expired(signal.id, 30)

        assert exc_info.value.current == "EXPIRED"
        assert exc_info.value.target == "EXPIRED"

    def test_cannot_close_active_signal(self, engine, make_signal):
        signal = make_signal()

        with pytest.raises(InvalidTransitionError):
            engine.transitions.mark_closed(signal.id, SignalOutcome.EXPIRED)

        assert engine.signals.get(signal.id).status == SignalStatus.ACTIVE

    def test_cannot_cancel_expired_signal(self, engine, make_signal):
        signal = make_signal()
        engine.transitions.mark_expired(signal.id, 30)

        with pytest.raises(InvalidTransitionError):
            engine.transitions.cancel(signal.id)

    def test_terminal_signal_cannot_expire(self, engine, make_signal):
        signal = make_signal()
        engine.transitions.cancel(signal.id)

        with pytest.raises(InvalidTransitionError):
            engine.transitions.mark_expired(signal.id, 30)

        assert engine.signals.get(signal.id).status == SignalStatus.CANCELLED

    @pytest.mark.parametrize("action", ["mark_expired", "cancel"])
    def test_missing_signal_raises_not_found(self, engine, action):
        with pytest.raises(NotFoundError):
            getattr(engine.transitions, action)("missing-id")

    def test_missing_signal_close_raises_not_found(self, engine):
        with pytest.raises(NotFoundError):
            engine.transitions.mark_closed("missing-id", SignalOutcome.EXPIRED)
