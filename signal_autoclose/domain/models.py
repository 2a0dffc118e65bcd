"""
Domain models for the signal auto-close engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any


def utc_now() -> datetime:
    """Current instant as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class SignalStatus(str, Enum):
    """
    Signal lifecycle states.

    State Machine:
        ACTIVE → EXPIRED (expires_at reached)
        ACTIVE → CANCELLED (provider cancelled)
        EXPIRED → CLOSED (grace period ended)

    Terminal States: CLOSED, CANCELLED
    """
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class SignalOutcome(str, Enum):
    """Outcome recorded on terminal signal transitions."""
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    TARGET_HIT = "TARGET_HIT"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"


class PositionStatus(str, Enum):
    """Copied position status. Everything but OPEN is terminal."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    AUTO_CLOSED = "AUTO_CLOSED"
    MANUALLY_CLOSED = "MANUALLY_CLOSED"


class AutoCloseReason(str, Enum):
    """Reason recorded when the engine closes a position."""
    SIGNAL_EXPIRED = "SIGNAL_EXPIRED"
    SIGNAL_CANCELLED = "SIGNAL_CANCELLED"
    TARGET_HIT = "TARGET_HIT"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"
    GRACE_PERIOD_ENDED = "GRACE_PERIOD_ENDED"
    USER_MANUAL = "USER_MANUAL"  # sentinel: no closure occurred


class ExpirationAction(str, Enum):
    """Per-user policy applied to open positions when a signal expires."""
    AUTO_CLOSE = "AUTO_CLOSE"
    NOTIFY_ONLY = "NOTIFY_ONLY"
    EXTEND_GRACE_PERIOD = "EXTEND_GRACE_PERIOD"
    DO_NOTHING = "DO_NOTHING"


class NotificationType(str, Enum):
    """Lifecycle event a notification communicates."""
    EXPIRATION_WARNING = "EXPIRATION_WARNING"
    GRACE_PERIOD_STARTED = "GRACE_PERIOD_STARTED"
    POSITION_AUTO_CLOSED = "POSITION_AUTO_CLOSED"
    SIGNAL_CANCELLED = "SIGNAL_CANCELLED"
    SIGNAL_EXPIRED = "SIGNAL_EXPIRED"


class NotificationStatus(str, Enum):
    """
    Notification delivery state.

        PENDING → SENT | FAILED (delivery attempt)
        SENT → READ (user action)
    """
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    READ = "READ"


class NotificationChannel(str, Enum):
    """Delivery channel."""
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    PUSH = "PUSH"
    WEBHOOK = "WEBHOOK"


# ============ ENTITIES ============

@dataclass
class Signal:
    """A time-bounded trade recommendation published by a provider."""
    id: str
    base_asset: str
    counter_asset: str
    expires_at: datetime
    status: SignalStatus = SignalStatus.ACTIVE
    outcome: Optional[SignalOutcome] = None
    provider_id: Optional[str] = None
    grace_period_ends_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    copiers_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.expires_at.tzinfo is None:
            raise ValueError("Signal expires_at must be timezone-aware (UTC)")

    @property
    def asset_pair(self) -> str:
        return f"{self.base_asset}/{self.counter_asset}"

    @property
    def is_terminal(self) -> bool:
        return self.status in (SignalStatus.CLOSED, SignalStatus.CANCELLED)


@dataclass
class CopiedPosition:
    """A user's stake copying a signal. Price and PnL fields are read-only here."""
    id: str
    signal_id: str
    user_id: str
    entry_price: Decimal
    volume: Decimal
    status: PositionStatus = PositionStatus.OPEN
    auto_close_reason: Optional[AutoCloseReason] = None
    exit_price: Optional[Decimal] = None
    pnl_percentage: Optional[Decimal] = None
    pnl_absolute: Optional[Decimal] = None
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class UserExpirationPreference:
    """Per-user expiration policy. One record per user."""
    user_id: str
    default_action: ExpirationAction = ExpirationAction.NOTIFY_ONLY
    grace_period_minutes: int = 30
    notify_before_expiration_minutes: int = 60
    notify_on_auto_close: bool = True
    notify_on_grace_period_start: bool = True
    # Advisory only. Stored and validated, never read by the orchestrator.
    auto_close_at_loss_threshold: Optional[Decimal] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ExpirationNotification:
    """A lifecycle communication. Immutable after send apart from READ."""
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    signal_id: Optional[str] = None
    position_id: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    channel: NotificationChannel = NotificationChannel.IN_APP
    data: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ============ RESULTS ============

def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def to_dict(obj: Any) -> Dict[str, Any]:
    """JSON-friendly dict for any dataclass in this module."""
    return _serialize(asdict(obj))


@dataclass(frozen=True)
class ExpirationCheckResult:
    """Read-only expiration status of one signal."""
    signal_id: str
    status: SignalStatus
    is_expired: bool
    is_in_grace_period: bool
    grace_period_ends_at: Optional[datetime]
    open_positions_count: int


@dataclass
class ExpirationSummary:
    checked_at: datetime
    total_expired: int
    total_in_grace_period: int
    signals: List[ExpirationCheckResult] = field(default_factory=list)


@dataclass(frozen=True)
class PositionCloseResult:
    """Outcome of processing one position."""
    position_id: str
    user_id: str
    success: bool
    reason: AutoCloseReason
    error: Optional[str] = None


@dataclass
class ExpirationHandlerResult:
    """Uniform result of an orchestrator entry point for one signal."""
    signal_id: str
    processed_at: datetime
    positions_processed: int = 0
    positions_closed: int = 0
    positions_notified: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[PositionCloseResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class BatchExpirationResult:
    """Result of the check-all-expirations task."""
    processed_count: int = 0
    closed_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    signal_results: List[ExpirationHandlerResult] = field(default_factory=list)


@dataclass
class GracePeriodBatchResult:
    """Result of the check-grace-periods task."""
    processed_count: int = 0
    closed_count: int = 0
    errors: List[str] = field(default_factory=list)
    signal_results: List[ExpirationHandlerResult] = field(default_factory=list)


@dataclass
class WarningsResult:
    """Result of the send-expiration-warnings task."""
    signals_checked: int = 0
    notifications_sent: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class TaskOutcome:
    """Success/failure report of a single-signal task."""
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
