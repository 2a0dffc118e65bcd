"""
Per-user expiration preferences.

get_or_create is the only way the engine reads a preference: a user without
a record gets the documented defaults, persisted on first access.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from signal_autoclose.domain.models import ExpirationAction, UserExpirationPreference
from signal_autoclose.exceptions import ValidationError
from signal_autoclose.monitoring.logger import get_logger
from signal_autoclose.storage.repository import PreferenceRepository

logger = get_logger(__name__)


DEFAULT_PREFERENCE: Dict[str, Any] = {
    "default_action": ExpirationAction.NOTIFY_ONLY,
    "grace_period_minutes": 30,
    "notify_before_expiration_minutes": 60,
    "notify_on_auto_close": True,
    "notify_on_grace_period_start": True,
    "auto_close_at_loss_threshold": None,
}


class PreferenceUpdate(BaseModel):
    """Partial update payload. Unset fields are left untouched."""
    model_config = ConfigDict(extra="forbid")

    default_action: Optional[ExpirationAction] = None
    grace_period_minutes: Optional[int] = Field(default=None, ge=5, le=1440)
    notify_before_expiration_minutes: Optional[int] = Field(default=None, ge=5, le=1440)
    notify_on_auto_close: Optional[bool] = None
    notify_on_grace_period_start: Optional[bool] = None
    auto_close_at_loss_threshold: Optional[Decimal] = Field(default=None, ge=-100, le=0)


def default_preference(user_id: str) -> UserExpirationPreference:
    return UserExpirationPreference(id=str(uuid.uuid4()), user_id=user_id, **DEFAULT_PREFERENCE)


class PreferenceService:
    """Lazy-materializing preference store."""

    def __init__(self, preferences: PreferenceRepository):
        self.preferences = preferences

    def get_or_create(self, user_id: str) -> UserExpirationPreference:
        preference = self.preferences.get(user_id)
        if preference is not None:
            return preference

        preference, created = self.preferences.add_if_absent(default_preference(user_id))
        if created:
            logger.info("Default expiration preference created", user_id=user_id)
        return preference

    def update(self, user_id: str, changes: Dict[str, Any] | PreferenceUpdate) -> UserExpirationPreference:
        """
        Validate and apply a partial update, creating the record if needed.

        Raises:
            ValidationError: If any field is outside its declared range
        """
        if isinstance(changes, PreferenceUpdate):
            update = changes
        else:
            try:
                update = PreferenceUpdate.model_validate(changes)
            except pydantic.ValidationError as e:
                raise ValidationError(str(e)) from e

        values = update.model_dump(exclude_unset=True)
        nulled = sorted(k for k, v in values.items() if v is None and k != "auto_close_at_loss_threshold")
        if nulled:
            raise ValidationError(f"Fields cannot be null: {', '.join(nulled)}")

        self.get_or_create(user_id)
        if values:
            self.preferences.update(user_id, values)
            logger.info("Expiration preference updated", user_id=user_id, fields=sorted(values))
        return self.preferences.get(user_id)
