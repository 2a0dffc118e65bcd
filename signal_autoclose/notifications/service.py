"""
Expiration notifications.

Decides what to tell a user about a lifecycle event, persists the record as
PENDING and attempts delivery once. Delivery outcome is terminal: SENT or
FAILED. A failed delivery is logged and never propagated, so it cannot
abort the position or signal being processed.

Duplicate suppression: every record carries a dedupe key derived from
(user, signal, type, position, time bucket). The key is unique in the
store, so a re-delivered task inside the same bucket gets the existing
record back instead of a second notification. The previous bucket is
checked as well, so a redelivery just across a bucket boundary is still
suppressed when the earlier record is less than one window old.
"""
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from signal_autoclose.domain.models import (
    AutoCloseReason,
    CopiedPosition,
    ExpirationNotification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    Signal,
    utc_now,
)
from signal_autoclose.domain.protocols import Clock
from signal_autoclose.exceptions import NotFoundError
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.notifications.transports import InAppTransport, TransportRegistry
from signal_autoclose.storage.repository import NotificationRepository

logger = get_logger(__name__)


REASON_MESSAGES: Dict[AutoCloseReason, str] = {
    AutoCloseReason.SIGNAL_EXPIRED: "signal expiration",
    AutoCloseReason.SIGNAL_CANCELLED: "signal cancellation by provider",
    AutoCloseReason.TARGET_HIT: "target price reached",
    AutoCloseReason.STOP_LOSS_HIT: "stop loss triggered",
    AutoCloseReason.GRACE_PERIOD_ENDED: "grace period ending",
    AutoCloseReason.USER_MANUAL: "your request",
}


def dedupe_key(
    user_id: str,
    signal_id: Optional[str],
    type: NotificationType,
    position_id: Optional[str],
    at: datetime,
    window_minutes: int,
) -> str:
    """Deterministic key for one event within one time bucket."""
    bucket = int(at.timestamp() // (window_minutes * 60))
    raw = f"{user_id}|{signal_id or ''}|{type.value}|{position_id or ''}|{bucket}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


class NotificationService:
    """Creates, delivers and tracks expiration notifications."""

    def __init__(
        self,
        notifications: NotificationRepository,
        transports: Optional[TransportRegistry] = None,
        default_channel: NotificationChannel = NotificationChannel.IN_APP,
        dedupe_window_minutes: int = 60,
        clock: Clock = utc_now,
    ):
        self.notifications = notifications
        self.transports = transports or TransportRegistry({NotificationChannel.IN_APP: InAppTransport()})
        self.default_channel = default_channel
        self.dedupe_window_minutes = dedupe_window_minutes
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _base_data(self, signal: Signal, position: CopiedPosition) -> Dict[str, Any]:
        return {
            "signal_id": signal.id,
            "position_id": position.id,
            "base_asset": signal.base_asset,
            "counter_asset": signal.counter_asset,
        }

    def _create(
        self,
        user_id: str,
        signal: Signal,
        position: CopiedPosition,
        type: NotificationType,
        title: str,
        message: str,
        data: Dict[str, Any],
    ) -> ExpirationNotification:
        now = self.clock()
        window = timedelta(minutes=self.dedupe_window_minutes)
        previous = self.notifications.get_by_dedupe_key(
            dedupe_key(user_id, signal.id, type, position.id, now - window, self.dedupe_window_minutes)
        )
        if previous is not None and previous.created_at is not None and previous.created_at > now - window:
            return self._deduped(previous)

        record = ExpirationNotification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            signal_id=signal.id,
            position_id=position.id,
            type=type,
            status=NotificationStatus.PENDING,
            channel=self.default_channel,
            title=title,
            message=message,
            data=data,
            dedupe_key=dedupe_key(user_id, signal.id, type, position.id, now, self.dedupe_window_minutes),
            created_at=now,
        )

        stored, created = self.notifications.add_unique(record)
        if not created:
            return self._deduped(stored)

        return self._deliver(stored)

    def _deduped(self, existing: ExpirationNotification) -> ExpirationNotification:
        logger.info(
            "NOTIFICATION_DEDUPED",
            notification_id=existing.id,
            user_id=existing.user_id,
            signal_id=existing.signal_id,
            type=existing.type.value,
        )
        return existing

    def _deliver(self, notification: ExpirationNotification) -> ExpirationNotification:
        try:
            self.transports.send(notification)
        except Exception as e:
            # Terminal: FAILED is not retried by this engine
            self.notifications.update(
                notification.id, {"status": NotificationStatus.FAILED, "error": str(e)[:1000]}
            )
            notification.status = NotificationStatus.FAILED
            notification.error = str(e)
            logger.error(
                "NOTIFICATION_DELIVERY_FAILED",
                notification_id=notification.id,
                channel=notification.channel.value,
                type=notification.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return notification

        sent_at = self.clock()
        self.notifications.update(notification.id, {"status": NotificationStatus.SENT, "sent_at": sent_at})
        notification.status = NotificationStatus.SENT
        notification.sent_at = sent_at
        logger.debug(
            "NOTIFICATION_SENT",
            notification_id=notification.id,
            channel=notification.channel.value,
            type=notification.type.value,
            user_id=notification.user_id,
        )
        return notification

    def warn_expiring(
        self,
        user_id: str,
        signal: Signal,
        position: CopiedPosition,
        minutes_until_expiration: int,
    ) -> ExpirationNotification:
        data = self._base_data(signal, position)
        data.update(
            expires_at=signal.expires_at.isoformat(),
            minutes_until_expiration=minutes_until_expiration,
        )
        return self._create(
            user_id, signal, position,
            NotificationType.EXPIRATION_WARNING,
            "Signal Expiring Soon",
            f"Your position in {signal.asset_pair} will expire in {minutes_until_expiration} minutes. "
            "Please review your position.",
            data,
        )

    def warn_grace_period_started(
        self,
        user_id: str,
        signal: Signal,
        position: CopiedPosition,
        grace_period_minutes: int,
    ) -> ExpirationNotification:
        ends_at = self.clock() + timedelta(minutes=grace_period_minutes)
        data = self._base_data(signal, position)
        data.update(grace_period_minutes=grace_period_minutes, grace_period_ends_at=ends_at.isoformat())
        return self._create(
            user_id, signal, position,
            NotificationType.GRACE_PERIOD_STARTED,
            "Grace Period Started",
            f"The signal for {signal.asset_pair} has expired. "
            f"Your position will remain open for {grace_period_minutes} more minutes.",
            data,
        )

    def notify_auto_closed(
        self,
        user_id: str,
        signal: Signal,
        position: CopiedPosition,
        reason: AutoCloseReason,
    ) -> ExpirationNotification:
        data = self._base_data(signal, position)
        data.update(
            reason=reason.value,
            closed_at=self.clock().isoformat(),
            pnl_percentage=str(position.pnl_percentage) if position.pnl_percentage is not None else None,
            pnl_absolute=str(position.pnl_absolute) if position.pnl_absolute is not None else None,
        )
        return self._create(
            user_id, signal, position,
            NotificationType.POSITION_AUTO_CLOSED,
            "Position Auto-Closed",
            f"Your position in {signal.asset_pair} has been automatically closed due to {REASON_MESSAGES[reason]}.",
            data,
        )

    def notify_cancelled(self, user_id: str, signal: Signal, position: CopiedPosition) -> ExpirationNotification:
        data = self._base_data(signal, position)
        data.update(cancelled_at=self.clock().isoformat())
        return self._create(
            user_id, signal, position,
            NotificationType.SIGNAL_CANCELLED,
            "Signal Cancelled",
            f"The signal provider has cancelled the {signal.asset_pair} signal. Your position has been closed.",
            data,
        )

    def notify_expired_no_action(self, user_id: str, signal: Signal, position: CopiedPosition) -> ExpirationNotification:
        data = self._base_data(signal, position)
        data.update(expired_at=self.clock().isoformat())
        return self._create(
            user_id, signal, position,
            NotificationType.SIGNAL_EXPIRED,
            "Signal Expired",
            f"The {signal.asset_pair} signal has expired. "
            "Your position remains open - please decide what action to take.",
            data,
        )

    # ------------------------------------------------------------------
    # Queries and read state
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExpirationNotification]:
        return self.notifications.find(user_id=user_id, limit=limit, offset=offset)

    def list_unread(self, user_id: str) -> List[ExpirationNotification]:
        return self.notifications.find(user_id=user_id, status=NotificationStatus.SENT, unread_only=True)

    def mark_read(self, notification_id: str) -> ExpirationNotification:
        """
        Raises:
            NotFoundError: If the notification does not exist
        """
        if self.notifications.get(notification_id) is None:
            raise NotFoundError("Notification", notification_id)
        self.notifications.update(
            notification_id, {"status": NotificationStatus.READ, "read_at": self.clock()}
        )
        return self.notifications.get(notification_id)

    def mark_all_read(self, user_id: str) -> int:
        count = self.notifications.mark_all_read(user_id, self.clock())
        if count:
            logger.info("Notifications marked read", user_id=user_id, count=count)
        return count
