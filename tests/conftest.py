"""
Pytest configuration and shared fixtures.

Every test gets its own in-memory SQLite database and a frozen clock.
"""
import os

# Keep load_config() away from .env files and prod-only validation
os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from signal_autoclose.app import build_engine
from signal_autoclose.config.config import Config, DatabaseConfig
from signal_autoclose.domain.models import (
    CopiedPosition,
    ExpirationAction,
    PositionStatus,
    Signal,
    SignalStatus,
)
from signal_autoclose.monitoring.alerts import AlertSystem
from signal_autoclose.storage.db import Database, reset_db

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.drop_all()
    reset_db()


@pytest.fixture
def config():
    return Config(environment="test", database=DatabaseConfig(url="sqlite://"))


@pytest.fixture
def engine(config, db, clock):
    return build_engine(config, db, clock=clock, alerts=AlertSystem(alert_methods=["log"]))


@pytest.fixture
def make_signal(engine, clock):
    """Persist a BTC/USDT signal expiring relative to the frozen clock (default: 5 minutes ago)."""

    def _make(
        expires_in: timedelta = timedelta(minutes=-5),
        status: SignalStatus = SignalStatus.ACTIVE,
        **overrides,
    ) -> Signal:
        signal = Signal(
            id=overrides.pop("id", str(uuid.uuid4())),
            base_asset=overrides.pop("base_asset", "BTC"),
            counter_asset=overrides.pop("counter_asset", "USDT"),
            expires_at=clock() + expires_in,
            status=status,
            **overrides,
        )
        return engine.signals.add(signal)

    return _make


@pytest.fixture
def make_position(engine):
    def _make(signal: Signal, user_id: str = "user-1", **overrides) -> CopiedPosition:
        position = CopiedPosition(
            id=overrides.pop("id", str(uuid.uuid4())),
            signal_id=signal.id,
            user_id=user_id,
            entry_price=overrides.pop("entry_price", Decimal("100.5")),
            volume=overrides.pop("volume", Decimal("2")),
            status=overrides.pop("status", PositionStatus.OPEN),
            **overrides,
        )
        return engine.positions.add(position)

    return _make


@pytest.fixture
def set_action(engine):
    def _set(user_id: str, action: ExpirationAction, **changes):
        return engine.preferences.update(user_id, {"default_action": action.value, **changes})

    return _set
