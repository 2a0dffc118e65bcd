"""
Persistence for signals, copied positions, preferences and notifications.

Provides repository pattern for clean data access. ORM rows never leave a
session: every read converts to the domain dataclasses in
signal_autoclose.domain.models.
"""
from sqlalchemy import Column, String, Numeric, Integer, Boolean, Text, JSON, Index
from sqlalchemy.exc import IntegrityError
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from signal_autoclose.domain.models import (
    AutoCloseReason,
    CopiedPosition,
    ExpirationAction,
    ExpirationNotification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    PositionStatus,
    Signal,
    SignalOutcome,
    SignalStatus,
    UserExpirationPreference,
    utc_now,
)
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.storage.db import Base, Database, UTCDateTime, get_db

logger = get_logger(__name__)


# ORM Models
class SignalModel(Base):
    """ORM model for provider signals."""
    __tablename__ = "signals"
    __table_args__ = (
        Index("idx_signal_status_expires", "status", "expires_at"),
        Index("idx_signal_status_grace", "status", "grace_period_ends_at"),
    )

    id = Column(String, primary_key=True)
    provider_id = Column(String, nullable=True)
    base_asset = Column(String, nullable=False)
    counter_asset = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SignalStatus.ACTIVE.value)
    outcome = Column(String, nullable=True)
    expires_at = Column(UTCDateTime, nullable=False)
    grace_period_ends_at = Column(UTCDateTime, nullable=True)
    closed_at = Column(UTCDateTime, nullable=True)
    copiers_count = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class CopiedPositionModel(Base):
    """ORM model for positions users opened by copying a signal."""
    __tablename__ = "copied_positions"
    __table_args__ = (
        Index("idx_position_signal_status", "signal_id", "status"),
        Index("idx_position_user_status", "user_id", "status"),
    )

    id = Column(String, primary_key=True)
    signal_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PositionStatus.OPEN.value)
    auto_close_reason = Column(String, nullable=True)
    entry_price = Column(Numeric(precision=18, scale=8), nullable=False)
    exit_price = Column(Numeric(precision=18, scale=8), nullable=True)
    volume = Column(Numeric(precision=18, scale=8), nullable=False)
    pnl_percentage = Column(Numeric(precision=10, scale=4), nullable=True)
    pnl_absolute = Column(Numeric(precision=18, scale=8), nullable=True)
    closed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class UserExpirationPreferenceModel(Base):
    """ORM model for per-user expiration policy (one row per user)."""
    __tablename__ = "user_expiration_preferences"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, unique=True)
    default_action = Column(String, nullable=False, default=ExpirationAction.NOTIFY_ONLY.value)
    grace_period_minutes = Column(Integer, nullable=False, default=30)
    notify_before_expiration_minutes = Column(Integer, nullable=False, default=60)
    notify_on_auto_close = Column(Boolean, nullable=False, default=True)
    notify_on_grace_period_start = Column(Boolean, nullable=False, default=True)
    auto_close_at_loss_threshold = Column(Numeric(precision=10, scale=4), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class ExpirationNotificationModel(Base):
    """ORM model for lifecycle notifications (never deleted)."""
    __tablename__ = "expiration_notifications"
    __table_args__ = (
        Index("idx_notification_user_created", "user_id", "created_at"),
        Index("idx_notification_user_status", "user_id", "status"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    signal_id = Column(String, nullable=True)
    position_id = Column(String, nullable=True)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=NotificationStatus.PENDING.value)
    channel = Column(String, nullable=False, default=NotificationChannel.IN_APP.value)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    # Deterministic key; a second create for the same event in the same window conflicts here
    dedupe_key = Column(String, nullable=True, unique=True)
    error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    read_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)


# Conversions
def _dec(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _signal_from_model(m: SignalModel) -> Signal:
    return Signal(
        id=m.id,
        provider_id=m.provider_id,
        base_asset=m.base_asset,
        counter_asset=m.counter_asset,
        status=SignalStatus(m.status),
        outcome=SignalOutcome(m.outcome) if m.outcome else None,
        expires_at=m.expires_at,
        grace_period_ends_at=m.grace_period_ends_at,
        closed_at=m.closed_at,
        copiers_count=m.copiers_count or 0,
        created_at=m.created_at,
        updated_at=m.updated_at,
    )


def _position_from_model(m: CopiedPositionModel) -> CopiedPosition:
    return CopiedPosition(
        id=m.id,
        signal_id=m.signal_id,
        user_id=m.user_id,
        status=PositionStatus(m.status),
        auto_close_reason=AutoCloseReason(m.auto_close_reason) if m.auto_close_reason else None,
        entry_price=_dec(m.entry_price),
        exit_price=_dec(m.exit_price),
        volume=_dec(m.volume),
        pnl_percentage=_dec(m.pnl_percentage),
        pnl_absolute=_dec(m.pnl_absolute),
        closed_at=m.closed_at,
        created_at=m.created_at,
        updated_at=m.updated_at,
    )


def _preference_from_model(m: UserExpirationPreferenceModel) -> UserExpirationPreference:
    return UserExpirationPreference(
        id=m.id,
        user_id=m.user_id,
        default_action=ExpirationAction(m.default_action),
        grace_period_minutes=m.grace_period_minutes,
        notify_before_expiration_minutes=m.notify_before_expiration_minutes,
        notify_on_auto_close=m.notify_on_auto_close,
        notify_on_grace_period_start=m.notify_on_grace_period_start,
        auto_close_at_loss_threshold=_dec(m.auto_close_at_loss_threshold),
        created_at=m.created_at,
        updated_at=m.updated_at,
    )


def _notification_from_model(m: ExpirationNotificationModel) -> ExpirationNotification:
    return ExpirationNotification(
        id=m.id,
        user_id=m.user_id,
        signal_id=m.signal_id,
        position_id=m.position_id,
        type=NotificationType(m.type),
        status=NotificationStatus(m.status),
        channel=NotificationChannel(m.channel),
        title=m.title,
        message=m.message,
        data=dict(m.data or {}),
        dedupe_key=m.dedupe_key,
        error=m.error,
        sent_at=m.sent_at,
        read_at=m.read_at,
        created_at=m.created_at,
    )


def _enum_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """Enums are stored by value."""
    return {k: (v.value if hasattr(v, "value") else v) for k, v in values.items()}


class _Repository:
    """Lazy database access shared by the repositories."""

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_db()
        return self._db


class SignalRepository(_Repository):
    """Signal reads and conditional state updates."""

    def add(self, signal: Signal) -> Signal:
        now = utc_now()
        with self.db.get_session() as session:
            session.add(SignalModel(
                id=signal.id,
                provider_id=signal.provider_id,
                base_asset=signal.base_asset,
                counter_asset=signal.counter_asset,
                status=signal.status.value,
                outcome=signal.outcome.value if signal.outcome else None,
                expires_at=signal.expires_at,
                grace_period_ends_at=signal.grace_period_ends_at,
                closed_at=signal.closed_at,
                copiers_count=signal.copiers_count,
                created_at=signal.created_at or now,
                updated_at=signal.updated_at or now,
            ))
        return self.get(signal.id)

    def get(self, signal_id: str) -> Optional[Signal]:
        with self.db.get_session() as session:
            row = session.get(SignalModel, signal_id)
            return _signal_from_model(row) if row else None

    def find(
        self,
        status: Optional[SignalStatus] = None,
        outcome: Optional[SignalOutcome] = None,
        expires_at_lte: Optional[datetime] = None,
        expires_at_gt: Optional[datetime] = None,
        grace_period_ends_at_lte: Optional[datetime] = None,
    ) -> List[Signal]:
        """Filter-by-field and range query; ordered by expiry."""
        with self.db.get_session() as session:
            query = session.query(SignalModel)
            if status is not None:
                query = query.filter(SignalModel.status == status.value)
            if outcome is not None:
                query = query.filter(SignalModel.outcome == outcome.value)
            if expires_at_lte is not None:
                query = query.filter(SignalModel.expires_at <= expires_at_lte)
            if expires_at_gt is not None:
                query = query.filter(SignalModel.expires_at > expires_at_gt)
            if grace_period_ends_at_lte is not None:
                query = query.filter(
                    SignalModel.grace_period_ends_at.isnot(None),
                    SignalModel.grace_period_ends_at <= grace_period_ends_at_lte,
                )
            rows = query.order_by(SignalModel.expires_at.asc(), SignalModel.id.asc()).all()
            return [_signal_from_model(r) for r in rows]

    def update_if_status(
        self,
        signal_id: str,
        allowed_statuses: Iterable[SignalStatus],
        values: Dict[str, Any],
    ) -> int:
        """
        Atomic conditional update. Returns affected row count
        (0 when the signal is missing or not in an allowed status).
        """
        values = _enum_values(values)
        values.setdefault("updated_at", utc_now())
        with self.db.get_session() as session:
            return (
                session.query(SignalModel)
                .filter(
                    SignalModel.id == signal_id,
                    SignalModel.status.in_([s.value for s in allowed_statuses]),
                )
                .update(values, synchronize_session=False)
            )


class PositionRepository(_Repository):
    """Copied position reads and the close-if-open update."""

    def add(self, position: CopiedPosition) -> CopiedPosition:
        now = utc_now()
        with self.db.get_session() as session:
            session.add(CopiedPositionModel(
                id=position.id,
                signal_id=position.signal_id,
                user_id=position.user_id,
                status=position.status.value,
                auto_close_reason=position.auto_close_reason.value if position.auto_close_reason else None,
                entry_price=position.entry_price,
                exit_price=position.exit_price,
                volume=position.volume,
                pnl_percentage=position.pnl_percentage,
                pnl_absolute=position.pnl_absolute,
                closed_at=position.closed_at,
                created_at=position.created_at or now,
                updated_at=position.updated_at or now,
            ))
        return self.get(position.id)

    def get(self, position_id: str) -> Optional[CopiedPosition]:
        with self.db.get_session() as session:
            row = session.get(CopiedPositionModel, position_id)
            return _position_from_model(row) if row else None

    def find(
        self,
        signal_id: Optional[str] = None,
        user_ids: Optional[List[str]] = None,
        status: Optional[PositionStatus] = None,
    ) -> List[CopiedPosition]:
        with self.db.get_session() as session:
            query = session.query(CopiedPositionModel)
            if signal_id is not None:
                query = query.filter(CopiedPositionModel.signal_id == signal_id)
            if user_ids is not None:
                query = query.filter(CopiedPositionModel.user_id.in_(user_ids))
            if status is not None:
                query = query.filter(CopiedPositionModel.status == status.value)
            rows = query.order_by(CopiedPositionModel.created_at.asc(), CopiedPositionModel.id.asc()).all()
            return [_position_from_model(r) for r in rows]

    def count(self, signal_id: str, status: Optional[PositionStatus] = None) -> int:
        with self.db.get_session() as session:
            query = session.query(CopiedPositionModel).filter(CopiedPositionModel.signal_id == signal_id)
            if status is not None:
                query = query.filter(CopiedPositionModel.status == status.value)
            return query.count()

    def close_if_open(
        self,
        position_id: str,
        status: PositionStatus,
        reason: AutoCloseReason,
        closed_at: datetime,
    ) -> int:
        """Single atomic update guarded on status=OPEN. Returns affected count."""
        with self.db.get_session() as session:
            return (
                session.query(CopiedPositionModel)
                .filter(
                    CopiedPositionModel.id == position_id,
                    CopiedPositionModel.status == PositionStatus.OPEN.value,
                )
                .update(
                    {
                        "status": status.value,
                        "auto_close_reason": reason.value,
                        "closed_at": closed_at,
                        "updated_at": closed_at,
                    },
                    synchronize_session=False,
                )
            )


class PreferenceRepository(_Repository):
    """Per-user preference rows, unique on user_id."""

    def get(self, user_id: str) -> Optional[UserExpirationPreference]:
        with self.db.get_session() as session:
            row = session.query(UserExpirationPreferenceModel).filter(
                UserExpirationPreferenceModel.user_id == user_id
            ).first()
            return _preference_from_model(row) if row else None

    def add_if_absent(self, preference: UserExpirationPreference) -> Tuple[UserExpirationPreference, bool]:
        """
        Insert the preference unless the user already has one.

        Returns (stored preference, created). A concurrent insert losing the
        unique-key race returns the winner's row.
        """
        now = utc_now()
        try:
            with self.db.get_session() as session:
                session.add(UserExpirationPreferenceModel(
                    id=preference.id,
                    user_id=preference.user_id,
                    default_action=preference.default_action.value,
                    grace_period_minutes=preference.grace_period_minutes,
                    notify_before_expiration_minutes=preference.notify_before_expiration_minutes,
                    notify_on_auto_close=preference.notify_on_auto_close,
                    notify_on_grace_period_start=preference.notify_on_grace_period_start,
                    auto_close_at_loss_threshold=preference.auto_close_at_loss_threshold,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            existing = self.get(preference.user_id)
            if existing is None:
                raise
            return existing, False
        return self.get(preference.user_id), True

    def update(self, user_id: str, values: Dict[str, Any]) -> int:
        values = _enum_values(values)
        values.setdefault("updated_at", utc_now())
        with self.db.get_session() as session:
            return (
                session.query(UserExpirationPreferenceModel)
                .filter(UserExpirationPreferenceModel.user_id == user_id)
                .update(values, synchronize_session=False)
            )


class NotificationRepository(_Repository):
    """Notification records and their delivery/read state."""

    def add_unique(self, notification: ExpirationNotification) -> Tuple[ExpirationNotification, bool]:
        """
        Persist a notification. Returns (record, created); on a dedupe_key
        conflict returns the existing record with created=False.
        """
        try:
            with self.db.get_session() as session:
                session.add(ExpirationNotificationModel(
                    id=notification.id,
                    user_id=notification.user_id,
                    signal_id=notification.signal_id,
                    position_id=notification.position_id,
                    type=notification.type.value,
                    status=notification.status.value,
                    channel=notification.channel.value,
                    title=notification.title,
                    message=notification.message,
                    data=notification.data,
                    dedupe_key=notification.dedupe_key,
                    created_at=notification.created_at or utc_now(),
                ))
        except IntegrityError:
            if notification.dedupe_key is None:
                raise
            existing = self.get_by_dedupe_key(notification.dedupe_key)
            if existing is None:
                raise
            return existing, False
        return self.get(notification.id), True

    def get(self, notification_id: str) -> Optional[ExpirationNotification]:
        with self.db.get_session() as session:
            row = session.get(ExpirationNotificationModel, notification_id)
            return _notification_from_model(row) if row else None

    def get_by_dedupe_key(self, dedupe_key: str) -> Optional[ExpirationNotification]:
        with self.db.get_session() as session:
            row = session.query(ExpirationNotificationModel).filter(
                ExpirationNotificationModel.dedupe_key == dedupe_key
            ).first()
            return _notification_from_model(row) if row else None

    def update(self, notification_id: str, values: Dict[str, Any]) -> int:
        with self.db.get_session() as session:
            return (
                session.query(ExpirationNotificationModel)
                .filter(ExpirationNotificationModel.id == notification_id)
                .update(_enum_values(values), synchronize_session=False)
            )

    def find(
        self,
        user_id: Optional[str] = None,
        signal_id: Optional[str] = None,
        position_id: Optional[str] = None,
        type: Optional[NotificationType] = None,
        status: Optional[NotificationStatus] = None,
        unread_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ExpirationNotification]:
        """Newest first."""
        with self.db.get_session() as session:
            query = session.query(ExpirationNotificationModel)
            if user_id is not None:
                query = query.filter(ExpirationNotificationModel.user_id == user_id)
            if signal_id is not None:
                query = query.filter(ExpirationNotificationModel.signal_id == signal_id)
            if position_id is not None:
                query = query.filter(ExpirationNotificationModel.position_id == position_id)
            if type is not None:
                query = query.filter(ExpirationNotificationModel.type == type.value)
            if status is not None:
                query = query.filter(ExpirationNotificationModel.status == status.value)
            if unread_only:
                query = query.filter(ExpirationNotificationModel.read_at.is_(None))
            query = query.order_by(ExpirationNotificationModel.created_at.desc())
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [_notification_from_model(r) for r in query.all()]

    def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        """Flip every SENT notification of the user to READ. Returns count."""
        with self.db.get_session() as session:
            return (
                session.query(ExpirationNotificationModel)
                .filter(
                    ExpirationNotificationModel.user_id == user_id,
                    ExpirationNotificationModel.status == NotificationStatus.SENT.value,
                )
                .update(
                    {"status": NotificationStatus.READ.value, "read_at": read_at},
                    synchronize_session=False,
                )
            )
