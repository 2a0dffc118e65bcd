from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from signal_autoclose.api.server import create_app
from signal_autoclose.domain.models import ExpirationAction, PositionStatus

PREFIX = "/signals/expiration"


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as c:
        yield c


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["database_pool"] == {}


def test_summary_and_lists(client, make_signal):
    expired = make_signal()
    soon = make_signal(expires_in=timedelta(minutes=20), copiers_count=7)

    summary = client.get(f"{PREFIX}/summary").json()
    assert summary["total_expired"] == 1
    assert summary["signals"][0]["signal_id"] == expired.id

    listed = client.get(f"{PREFIX}/expired").json()
    assert listed["count"] == 1
    assert listed["signals"][0]["base_asset"] == "BTC"
    assert "expires_at" in listed["signals"][0]

    approaching = client.get(f"{PREFIX}/approaching/30").json()
    assert approaching["minutes_before"] == 30
    assert approaching["signals"][0]["id"] == soon.id
    assert approaching["signals"][0]["copiers_count"] == 7

    assert client.get(f"{PREFIX}/grace-period").json() == {"count": 0, "signals": []}


def test_approaching_minutes_range(client):
    assert client.get(f"{PREFIX}/approaching/4").status_code == 422
    assert client.get(f"{PREFIX}/approaching/1441").status_code == 422


def test_check_signal(client, make_signal, make_position):
    signal = make_signal()
    make_position(signal)

    body = client.get(f"{PREFIX}/check/{signal.id}").json()

    assert body["status"] == "ACTIVE"
    assert body["is_expired"] is True
    assert body["open_positions_count"] == 1


def test_check_missing_signal_is_404(client):
    resp = client.get(f"{PREFIX}/check/unknown")

    assert resp.status_code == 404
    assert resp.json()["detail"] == "Signal unknown not found"


class TestPreferences:

    def test_get_creates_defaults(self, client):
        body = client.get(f"{PREFIX}/preferences/alice").json()

        assert body["user_id"] == "alice"
        assert body["default_action"] == "NOTIFY_ONLY"
        assert body["grace_period_minutes"] == 30

    def test_put_updates(self, client):
        resp = client.put(
            f"{PREFIX}/preferences/alice",
            json={"default_action": "AUTO_CLOSE", "auto_close_at_loss_threshold": -20},
        )

        assert resp.status_code == 200
        assert resp.json()["default_action"] == "AUTO_CLOSE"
        assert client.get(f"{PREFIX}/preferences/alice").json()["default_action"] == "AUTO_CLOSE"

    def test_put_out_of_range_is_422(self, client):
        resp = client.put(f"{PREFIX}/preferences/alice", json={"grace_period_minutes": 2})

        assert resp.status_code == 422


def test_cancel(client, engine, make_signal, make_position):
    signal = make_signal(expires_in=timedelta(hours=1))
    position = make_position(signal)

    resp = client.post(f"{PREFIX}/cancel", json={"signal_id": signal.id, "reason": "provider pulled it"})

    assert resp.status_code == 200
    assert resp.json()["result"]["positions_closed"] == 1
    assert engine.positions.get(position.id).status == PositionStatus.AUTO_CLOSED


def test_cancel_twice_is_409(client, make_signal):
    signal = make_signal(expires_in=timedelta(hours=1))
    client.post(f"{PREFIX}/cancel", json={"signal_id": signal.id})

    resp = client.post(f"{PREFIX}/cancel", json={"signal_id": signal.id})

    assert resp.status_code == 409


class TestJobs:

    def test_queue_and_poll_status(self, client, engine, make_signal):
        signal = make_signal()

        resp = client.post(f"{PREFIX}/jobs/check-single", json={"signal_id": signal.id})
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]

        assert client.get(f"{PREFIX}/jobs/{job_id}/status").json()["state"] == "waiting"

        engine.queue.drain()
        status = client.get(f"{PREFIX}/jobs/{job_id}/status").json()

        assert status["state"] == "completed"
        assert status["name"] == "check-signal-expiration"
        assert status["returnvalue"]["success"] is True
        assert status["returnvalue"]["result"]["signal_id"] == signal.id
        assert status["finished_on"] is not None

    @pytest.mark.parametrize("route", ["check-all", "check-grace-periods"])
    def test_batch_routes(self, client, route):
        resp = client.post(f"{PREFIX}/jobs/{route}")

        assert resp.status_code == 202
        assert resp.json()["job_id"]

    def test_send_warnings_validates_minutes(self, client):
        assert client.post(f"{PREFIX}/jobs/send-warnings", json={"minutes_before": 3}).status_code == 422
        assert client.post(f"{PREFIX}/jobs/send-warnings", json={"minutes_before": 30}).status_code == 202

    def test_unknown_job_is_404(self, client):
        assert client.get(f"{PREFIX}/jobs/nope/status").status_code == 404

    def test_evicted_job_is_404(self, client, engine):
        engine.queue.max_finished_jobs = 1
        first = client.post(f"{PREFIX}/jobs/check-all").json()["job_id"]
        second = client.post(f"{PREFIX}/jobs/check-grace-periods").json()["job_id"]

        engine.queue.drain()

        assert client.get(f"{PREFIX}/jobs/{first}/status").status_code == 404
        assert client.get(f"{PREFIX}/jobs/{second}/status").json()["state"] == "completed"


class TestNotifications:

    @pytest.fixture
    def notified(self, engine, make_signal, make_position, set_action):
        set_action("alice", ExpirationAction.AUTO_CLOSE)
        signal = make_signal()
        make_position(signal, user_id="alice")
        engine.processor.dispatch("check-all-expirations")

    def test_list_unread_and_read(self, client, notified):
        listed = client.get(f"{PREFIX}/notifications/alice").json()
        assert listed["count"] == 1
        note = listed["notifications"][0]
        assert note["type"] == "POSITION_AUTO_CLOSED"
        assert note["status"] == "SENT"

        assert client.get(f"{PREFIX}/notifications/alice/unread").json()["count"] == 1

        resp = client.post(f"{PREFIX}/notifications/{note['id']}/read")
        assert resp.status_code == 200
        assert resp.json()["notification"]["status"] == "READ"
        assert client.get(f"{PREFIX}/notifications/alice/unread").json()["count"] == 0

    def test_read_all(self, client, notified):
        resp = client.post(f"{PREFIX}/notifications/alice/read-all")

        assert resp.json()["count"] == 1

    def test_read_missing_is_404(self, client):
        assert client.post(f"{PREFIX}/notifications/missing/read").status_code == 404

    def test_pagination_bounds(self, client):
        assert client.get(f"{PREFIX}/notifications/alice?limit=0").status_code == 422
        assert client.get(f"{PREFIX}/notifications/alice?limit=101").status_code == 422
        assert client.get(f"{PREFIX}/notifications/alice?offset=-1").status_code == 422
