"""
Task handlers: single-signal checks, batches, warnings and cancellation.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from signal_autoclose.domain.models import (
    AutoCloseReason,
    BatchExpirationResult,
    ExpirationAction,
    ExpirationCheckResult,
    ExpirationHandlerResult,
    NotificationType,
    PositionStatus,
    SignalStatus,
)
from signal_autoclose.exceptions import ValidationError


class TestCheckSignalExpiration:

    def test_expires_due_signal_with_default_grace(self, engine, make_signal, make_position, clock):
        signal = make_signal()
        make_position(signal, user_id="bob")

        outcome = engine.processor.dispatch("check-signal-expiration", {"signal_id": signal.id})

        assert outcome.success is True
        assert isinstance(outcome.result, ExpirationHandlerResult)
        assert outcome.result.positions_notified == 1
        stored = engine.signals.get(signal.id)
        assert stored.status == SignalStatus.EXPIRED
        assert stored.grace_period_ends_at == clock() + timedelta(minutes=30)

    def test_zero_grace_auto_close(self, engine, make_signal, make_position, set_action, clock):
        set_action("alice", ExpirationAction.AUTO_CLOSE)
        signal = make_signal()
        position = make_position(signal, user_id="alice")

        outcome = engine.processor.dispatch(
            "check-signal-expiration", {"signal_id": signal.id, "grace_period_minutes": 0}
        )

        assert outcome.success is True
        stored_signal = engine.signals.get(signal.id)
        assert stored_signal.status == SignalStatus.EXPIRED
        assert stored_signal.grace_period_ends_at is None
        assert stored_signal.closed_at == clock()
        stored_position = engine.positions.get(position.id)
        assert stored_position.status == PositionStatus.AUTO_CLOSED
        assert stored_position.auto_close_reason == AutoCloseReason.SIGNAL_EXPIRED
        types = [n.type for n in engine.notifications.list_for_user("alice")]
        assert types == [NotificationType.POSITION_AUTO_CLOSED]

    def test_not_yet_due_returns_check_only(self, engine, make_signal):
        signal = make_signal(expires_in=timedelta(minutes=10))

        outcome = engine.processor.dispatch("check-signal-expiration", {"signal_id": signal.id})

        assert outcome.success is True
        assert isinstance(outcome.result, ExpirationCheckResult)
        assert outcome.result.is_expired is False
        assert engine.signals.get(signal.id).status == SignalStatus.ACTIVE

    def test_redelivery_is_a_no_op(self, engine, make_signal, make_position):
        signal = make_signal()
        make_position(signal, user_id="bob")

        engine.processor.dispatch("check-signal-expiration", {"signal_id": signal.id})
        again = engine.processor.dispatch("check-signal-expiration", {"signal_id": signal.id})

        assert again.success is True
        assert isinstance(again.result, ExpirationCheckResult)
        assert again.result.status == SignalStatus.EXPIRED
        assert len(engine.notifications.list_for_user("bob")) == 1

    def test_missing_signal_reports_failure(self, engine):
        outcome = engine.processor.dispatch("check-signal-expiration", {"signal_id": "ghost"})

        assert outcome.success is False
        assert outcome.error == "Signal ghost not found"

    def test_bad_payload_reports_failure(self, engine):
        outcome = engine.processor.dispatch("check-signal-expiration", {"signal_id": ""})

        assert outcome.success is False
        assert "signal_id" in outcome.error


class TestCheckAllExpirations:

    def test_one_failing_signal_does_not_stop_the_batch(self, engine, make_signal, make_position, monkeypatch):
        signals = [make_signal(expires_in=timedelta(minutes=-(i + 1))) for i in range(5)]
        for s in signals:
            make_position(s, user_id=f"user-{s.id[:4]}")
        broken = signals[2]
        real_handle = engine.orchestrator.handle_expiration

        def handle(signal):
            if signal.id == broken.id:
                raise RuntimeError("store hiccup")
            return real_handle(signal)

        monkeypatch.setattr(engine.orchestrator, "handle_expiration", handle)
        engine.processor.alerts = MagicMock()

        result = engine.processor.dispatch("check-all-expirations")

        assert isinstance(result, BatchExpirationResult)
        assert result.processed_count == 4
        assert result.error_count == 1
        assert result.errors == [f"Signal {broken.id}: store hiccup"]
        assert len(result.signal_results) == 4
        for s in signals:
            assert engine.signals.get(s.id).status == SignalStatus.EXPIRED
        engine.processor.alerts.alert_batch_errors.assert_called_once()

    def test_counts_closed_positions(self, engine, make_signal, make_position, set_action):
        set_action("alice", ExpirationAction.AUTO_CLOSE)
        s1 = make_signal()
        s2 = make_signal()
        make_signal(expires_in=timedelta(hours=1))
        make_position(s1, user_id="alice")
        make_position(s2, user_id="alice")
        make_position(s2, user_id="bob")

        result = engine.processor.dispatch("check-all-expirations")

        assert result.processed_count == 2
        assert result.closed_count == 2
        assert result.error_count == 0

    def test_empty_batch(self, engine):
        engine.processor.alerts = MagicMock()

        result = engine.processor.dispatch("check-all-expirations")

        assert result.processed_count == 0
        assert result.errors == []
        engine.processor.alerts.alert_batch_errors.assert_called_once_with("check-all-expirations", [], 0)


class TestCheckGracePeriods:

    def test_closes_positions_after_window(self, engine, make_signal, make_position, set_action, clock):
        set_action("dave", ExpirationAction.DO_NOTHING)
        signal = make_signal()
        position = make_position(signal, user_id="dave")
        engine.processor.dispatch("check-all-expirations")

        early = engine.processor.dispatch("check-grace-periods")
        assert early.processed_count == 0

        clock.advance(minutes=31)
        result = engine.processor.dispatch("check-grace-periods")

        assert result.processed_count == 1
        assert result.closed_count == 1
        assert engine.positions.get(position.id).auto_close_reason == AutoCloseReason.GRACE_PERIOD_ENDED
        assert engine.signals.get(signal.id).status == SignalStatus.CLOSED

        again = engine.processor.dispatch("check-grace-periods")
        assert again.processed_count == 0


class TestSendExpirationWarnings:

    def test_warns_open_positions_without_mutation(self, engine, make_signal, make_position):
        soon = make_signal(expires_in=timedelta(minutes=30))
        make_signal(expires_in=timedelta(hours=3))
        p1 = make_position(soon, user_id="alice")
        p2 = make_position(soon, user_id="bob")
        make_position(soon, user_id="carol", status=PositionStatus.CLOSED)

        result = engine.processor.dispatch("send-expiration-warnings", {"minutes_before": 60})

        assert result.signals_checked == 1
        assert result.notifications_sent == 2
        assert result.errors == []
        for user in ("alice", "bob"):
            notes = engine.notifications.list_for_user(user)
            assert [n.type for n in notes] == [NotificationType.EXPIRATION_WARNING]
            assert notes[0].data["minutes_until_expiration"] == 60
        assert engine.signals.get(soon.id).status == SignalStatus.ACTIVE
        assert engine.positions.get(p1.id).status == PositionStatus.OPEN
        assert engine.positions.get(p2.id).status == PositionStatus.OPEN

    def test_minutes_before_is_validated(self, engine):
        with pytest.raises(ValidationError):
            engine.processor.dispatch("send-expiration-warnings", {"minutes_before": 1})


class TestHandleSignalCancellation:

    def test_cancels_and_closes(self, engine, make_signal, make_position):
        signal = make_signal(expires_in=timedelta(hours=2))
        position = make_position(signal, user_id="alice")

        outcome = engine.processor.dispatch("handle-signal-cancellation", {"signal_id": signal.id})

        assert outcome.success is True
        assert outcome.result.positions_closed == 1
        assert engine.signals.get(signal.id).status == SignalStatus.CANCELLED
        assert engine.positions.get(position.id).auto_close_reason == AutoCloseReason.SIGNAL_CANCELLED

    def test_cancelling_terminal_signal_fails_cleanly(self, engine, make_signal):
        signal = make_signal(expires_in=timedelta(hours=2))
        engine.transitions.cancel(signal.id)
        engine.processor.alerts = MagicMock()

        outcome = engine.processor.dispatch("handle-signal-cancellation", {"signal_id": signal.id})

        assert outcome.success is False
        assert "CANCELLED" in outcome.error
        engine.processor.alerts.alert_task_failed.assert_called_once()


def test_unknown_task_name_is_rejected(engine):
    with pytest.raises(ValidationError, match="Unknown task"):
        engine.processor.dispatch("reticulate-splines")
