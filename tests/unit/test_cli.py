import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from typer.testing import CliRunner

from signal_autoclose.cli import app
from signal_autoclose.domain.models import CopiedPosition, PositionStatus, Signal, SignalStatus
from signal_autoclose.storage.db import Database, reset_db
from signal_autoclose.storage.repository import PositionRepository, SignalRepository

runner = CliRunner()


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'autoclose.db'}"
    yield url
    reset_db()


@pytest.fixture
def seeded(db_url):
    """One overdue signal with one open position, written through a separate connection."""
    db = Database(db_url)
    db.create_all()
    now = datetime.now(timezone.utc)
    signal = SignalRepository(db).add(
        Signal(id=str(uuid.uuid4()), base_asset="ETH", counter_asset="USDC", expires_at=now - timedelta(minutes=5))
    )
    position = PositionRepository(db).add(
        CopiedPosition(
            id=str(uuid.uuid4()),
            signal_id=signal.id,
            user_id="alice",
            entry_price=Decimal("2500"),
            volume=Decimal("1"),
        )
    )
    return db, signal, position


def _invoke(db_url, *args):
    return runner.invoke(app, list(args), env={"DATABASE_URL": db_url, "ENVIRONMENT": "test"})


def test_init_db(db_url):
    result = _invoke(db_url, "init-db")

    assert result.exit_code == 0, result.output
    assert "Database initialized" in result.output


def test_summary(db_url, seeded):
    result = _invoke(db_url, "summary")

    assert result.exit_code == 0, result.output
    assert '"total_expired": 1' in result.output


def test_check_expires_signal(db_url, seeded):
    db, signal, _ = seeded

    result = _invoke(db_url, "check", signal.id, "--grace", "15")

    assert result.exit_code == 0, result.output
    assert '"success": true' in result.output
    assert SignalRepository(db).get(signal.id).status == SignalStatus.EXPIRED


def test_check_missing_signal_exits_nonzero(db_url, seeded):
    result = _invoke(db_url, "check", "ghost")

    assert result.exit_code == 1
    assert "Signal ghost not found" in result.output


def test_check_all_and_grace(db_url, seeded):
    db, signal, _ = seeded

    result = _invoke(db_url, "check-all")
    assert result.exit_code == 0, result.output
    assert '"processed_count": 1' in result.output

    result = _invoke(db_url, "check-grace")
    assert result.exit_code == 0, result.output
    assert '"processed_count": 0' in result.output


def test_send_warnings(db_url, seeded):
    result = _invoke(db_url, "send-warnings", "--minutes", "30")

    assert result.exit_code == 0, result.output
    assert '"signals_checked": 0' in result.output


def test_cancel(db_url, seeded):
    db, signal, position = seeded

    result = _invoke(db_url, "cancel", signal.id)

    assert result.exit_code == 0, result.output
    assert SignalRepository(db).get(signal.id).status == SignalStatus.CANCELLED
    assert PositionRepository(db).get(position.id).status == PositionStatus.AUTO_CLOSED


def test_run_scheduler_bounded(db_url, seeded):
    db, signal, _ = seeded

    result = _invoke(db_url, "run-scheduler", "--max-cycles", "1")

    assert result.exit_code == 0, result.output
    assert SignalRepository(db).get(signal.id).status == SignalStatus.EXPIRED
