"""
Task names and payloads.

Payloads travel through the queue as plain dicts; ``from_data`` validates
them at the handler boundary.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from signal_autoclose.exceptions import ValidationError


class TaskName(str, Enum):
    CHECK_SIGNAL_EXPIRATION = "check-signal-expiration"
    CHECK_ALL_EXPIRATIONS = "check-all-expirations"
    CHECK_GRACE_PERIODS = "check-grace-periods"
    SEND_EXPIRATION_WARNINGS = "send-expiration-warnings"
    HANDLE_SIGNAL_CANCELLATION = "handle-signal-cancellation"


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Payload field '{key}' must be a non-empty string")
    return value


def _optional_int(data: Dict[str, Any], key: str, minimum: int, maximum: int) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Payload field '{key}' must be an integer")
    if not minimum <= value <= maximum:
        raise ValidationError(f"Payload field '{key}' must be between {minimum} and {maximum}")
    return value


@dataclass(frozen=True)
class CheckSignalExpirationPayload:
    signal_id: str
    grace_period_minutes: Optional[int] = None

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "CheckSignalExpirationPayload":
        return cls(
            signal_id=_require_str(data, "signal_id"),
            grace_period_minutes=_optional_int(data, "grace_period_minutes", 0, 1440),
        )


@dataclass(frozen=True)
class SendExpirationWarningsPayload:
    minutes_before: int

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "SendExpirationWarningsPayload":
        minutes = _optional_int(data, "minutes_before", 5, 1440)
        if minutes is None:
            raise ValidationError("Payload field 'minutes_before' is required")
        return cls(minutes_before=minutes)


@dataclass(frozen=True)
class HandleSignalCancellationPayload:
    signal_id: str

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "HandleSignalCancellationPayload":
        return cls(signal_id=_require_str(data, "signal_id"))
