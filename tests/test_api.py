from dataclasses import replace

from fastapi.testclient import TestClient
import pytest

from conftest import MINUTE

from ipguard.audit import IP_BLOCKED
from ipguard.config import settings
from ipguard.main import create_app
from ipguard.middleware import BLOCKED_MESSAGE
from ipguard.security import ACCOUNT_BLOCKED_MESSAGE, create_access_token
from ipguard.tracker import AbuseTracker

ATTACKER = {"X-Forwarded-For": "203.0.113.50, 10.0.0.1"}


def _bearer(user_id: str, is_admin: bool = False) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, is_admin=is_admin)}"}


def _client(tracker: AbuseTracker, **overrides) -> TestClient:
    app_settings = replace(settings, rate_limit_requests_per_min=10_000, **overrides)
    return TestClient(create_app(app_settings, tracker=tracker))


@pytest.fixture
def client(tracker) -> TestClient:
    return _client(tracker)


def test_invalid_tokens_lead_to_block(client, tracker, audit_sink):
    bad = {"Authorization": "Bearer not-a-jwt", **ATTACKER}
    for _ in range(9):
        assert client.get("/api/me", headers=bad).status_code == 401

    # The request that crosses the threshold still gets its own response.
    assert client.get("/api/me", headers=bad).status_code == 401
    assert tracker.is_blocked("203.0.113.50") is True

    blocked = client.get("/api/me", headers={**_bearer("alice"), **ATTACKER})
    assert blocked.status_code == 403
    assert blocked.json()["detail"] == BLOCKED_MESSAGE
    assert blocked.json()["blocked_until"] is not None
    assert int(blocked.headers["Retry-After"]) == int(15 * MINUTE)

    assert len(audit_sink.events) == 1
    event = audit_sink.events[0]
    assert event.event_type == IP_BLOCKED
    assert event.client_key == "203.0.113.50"
    assert event.failure_count == 10
    assert event.block_duration_ms == 15 * 60 * 1000
    assert event.reason == "invalid_token"


def test_client_errors_count_as_failures(client, tracker):
    response = client.get("/does-not-exist", headers=ATTACKER)

    assert response.status_code == 404
    record = tracker.store.get("203.0.113.50")
    assert record.failure_count == 1
    assert record.last_reason == "http_404"


def test_missing_token_reason_is_recorded(client, tracker):
    client.get("/api/me", headers=ATTACKER)

    assert tracker.store.get("203.0.113.50").last_reason == "missing_token"


def test_successful_login_resets_failures(client, tracker):
    bad = {"Authorization": "Bearer not-a-jwt", **ATTACKER}
    for _ in range(9):
        client.get("/api/me", headers=bad)

    ok = client.get("/api/me", headers={**_bearer("alice"), **ATTACKER})

    assert ok.status_code == 200
    assert ok.json() == {"user_id": "alice", "is_admin": False, "client_key": "203.0.113.50"}
    assert tracker.store.get("203.0.113.50") is None

    client.get("/api/me", headers=bad)
    assert tracker.store.get("203.0.113.50").failure_count == 1


def test_block_lapses_without_reaper(client, tracker, clock):
    tracker.block("203.0.113.50", seconds=60)
    assert client.get("/api/me", headers={**_bearer("alice"), **ATTACKER}).status_code == 403

    clock.advance(61)

    assert client.get("/api/me", headers={**_bearer("alice"), **ATTACKER}).status_code == 200


def test_blocked_user_rejected_from_any_address(client, tracker):
    tracker.block("user:mallory", seconds=600)

    response = client.get("/api/me", headers={**_bearer("mallory"), "X-Forwarded-For": "198.51.100.3"})

    assert response.status_code == 403
    assert response.json()["detail"] == ACCOUNT_BLOCKED_MESSAGE
    assert "Retry-After" in response.headers


def test_blocked_account_retries_do_not_block_ip(client, tracker, policy):
    tracker.block("user:mallory", seconds=6000)
    headers = {**_bearer("mallory"), "X-Forwarded-For": "198.51.100.3"}

    for _ in range(policy.max_failed_attempts + 1):
        assert client.get("/api/me", headers=headers).status_code == 403

    assert tracker.is_blocked("198.51.100.3") is False
    assert tracker.store.get("198.51.100.3") is None


def test_forbidden_after_auth_counts_against_user_key(client, tracker):
    response = client.get("/admin/abuse/stats", headers={**_bearer("bob"), **ATTACKER})

    assert response.status_code == 403
    assert tracker.store.get("203.0.113.50").failure_count == 1
    assert tracker.store.get("user:bob").failure_count == 1


def test_admin_stats(client, tracker):
    tracker.record_failure("192.0.2.1", "http_401")
    tracker.block("192.0.2.2", seconds=60)

    response = client.get("/admin/abuse/stats", headers=_bearer("root", is_admin=True))

    assert response.status_code == 200
    body = response.json()
    assert body["total_tracked"] == 2
    assert body["blocked_count"] == 1
    assert {"key": "192.0.2.2", "failure_count": 0, "blocked": True} in body["per_client"]


def test_admin_manual_block_and_unblock(client, tracker, audit_sink):
    admin = _bearer("root", is_admin=True)

    created = client.post(
        "/admin/abuse/blocks",
        json={"client_key": "198.51.100.7", "duration_seconds": 300, "reason": "abuse report"},
        headers=admin,
    )
    assert created.status_code == 200
    assert created.json()["client_key"] == "198.51.100.7"
    assert tracker.is_blocked("198.51.100.7") is True
    assert client.get("/api/me", headers={"X-Forwarded-For": "198.51.100.7"}).status_code == 403

    removed = client.delete("/admin/abuse/blocks/198.51.100.7", headers=admin)
    assert removed.status_code == 200
    assert removed.json() == {"client_key": "198.51.100.7", "removed": True}
    assert tracker.is_blocked("198.51.100.7") is False
    assert [event.reason for event in audit_sink.events] == ["abuse report", "admin:root"]


def test_admin_block_validates_payload(client):
    response = client.post(
        "/admin/abuse/blocks",
        json={"client_key": "198.51.100.7", "duration_seconds": -1},
        headers=_bearer("root", is_admin=True),
    )

    assert response.status_code == 422


def test_rate_limiter_returns_429(tracker):
    client = TestClient(create_app(replace(settings, rate_limit_requests_per_min=2), tracker=tracker))
    headers = {**_bearer("alice"), **ATTACKER}

    assert client.get("/api/me", headers=headers).status_code == 200
    assert client.get("/api/me", headers=headers).status_code == 200
    limited = client.get("/api/me", headers=headers)

    assert limited.status_code == 429
    assert limited.json() == {"detail": "Rate limit exceeded"}


def test_health_and_metrics_are_exempt(client, tracker):
    tracker.block("testclient", seconds=600)

    assert client.get("/health").status_code == 200
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert b"ipguard_blocks_total" in metrics.content


def test_metrics_can_be_disabled(tracker):
    client = _client(tracker, enable_prometheus_metrics=False)

    assert client.get("/metrics").status_code == 404


def test_tracker_outage_fails_open(clock):
    class BrokenStore:
        def get(self, key):
            raise RuntimeError("store down")

        def update(self, key, fn):
            raise RuntimeError("store down")

        def delete(self, key):
            raise RuntimeError("store down")

        def __len__(self):
            return 0

    client = _client(AbuseTracker(store=BrokenStore(), clock=clock))

    assert client.get("/api/me", headers={**_bearer("alice"), **ATTACKER}).status_code == 200
    assert client.get("/api/me", headers=ATTACKER).status_code == 401


def test_reaper_runs_with_app_lifecycle(tracker):
    with _client(tracker) as client:
        assert client.get("/health").json()["reaper_running"] is True
    assert client.app.state.reaper.running is False
