import threading
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from burst_guard import BurstGuard
from message_gate import BURST_REASON, BURST_WARNING, MessageGate
from models import Role
from roles import TRIAL_MESSAGES_PER_DAY, UNLIMITED

WINDOW = 60_000


def _gate(store, admin_ids=(), max_burst=1_000):
    return MessageGate(store, admin_ids, BurstGuard(window_ms=WINDOW, max_messages=max_burst))


def test_new_sender_end_to_end(store, now):
    gate = _gate(store)
    first = gate.handle(42, username="newbie", now=now, now_ms=0)
    assert first.allowed
    user = store.get(42)
    assert user.role is Role.TRIAL
    assert user.trial_expires_at == now + timedelta(days=7)
    assert user.messages_used_today == 1
    assert first.remaining == TRIAL_MESSAGES_PER_DAY - 1

    for i in range(2, TRIAL_MESSAGES_PER_DAY + 1):
        result = gate.handle(42, now=now, now_ms=i)
        assert result.allowed
        assert store.get(42).messages_used_today == i

    denied = gate.handle(42, now=now, now_ms=TRIAL_MESSAGES_PER_DAY + 1)
    assert not denied.allowed
    assert denied.reason == "limit_exceeded"
    assert "daily message limit" in denied.reply
    assert denied.remaining == 0
    assert store.get(42).messages_used_today == TRIAL_MESSAGES_PER_DAY

    tomorrow = now + timedelta(days=1)
    again = gate.handle(42, now=tomorrow, now_ms=10 * WINDOW)
    assert again.allowed
    user = store.get(42)
    assert user.messages_used_today == 1
    assert user.last_message_date == "2025-03-11"


def test_remaining_decreases_by_one(store, now):
    gate = _gate(store)
    a = gate.handle(42, now=now, now_ms=0)
    b = gate.handle(42, now=now, now_ms=1)
    assert a.remaining - b.remaining == 1


def test_expired_trial_is_denied(store, now):
    store.create(42, now=now - timedelta(days=8))
    result = _gate(store).handle(42, now=now, now_ms=0)
    assert not result.allowed
    assert result.reason == "trial_expired"
    assert store.get(42).total_messages_used == 0


def test_admin_is_owner_and_unlimited(store, now):
    gate = _gate(store, admin_ids=[7], max_burst=1)
    for i in range(30):
        result = gate.handle(7, now=now, now_ms=i)
        assert result.allowed
        assert result.remaining == UNLIMITED
    assert store.get(7).role is Role.OWNER


def test_admin_drift_repaired_before_decision(store, now):
    store.create(7, role=Role.EXPIRED, now=now)
    store.update(7, messages_used_today=50, trial_expires_at=now - timedelta(days=1))
    result = _gate(store, admin_ids=[7]).handle(7, now=now, now_ms=0)
    assert result.allowed
    user = store.get(7)
    assert user.role is Role.OWNER
    assert user.trial_expires_at is None


def test_burst_guard_only_for_trial_and_expired(store, now):
    gate = _gate(store, max_burst=2)
    assert gate.handle(42, now=now, now_ms=0).allowed
    assert gate.handle(42, now=now, now_ms=1).allowed
    held = gate.handle(42, now=now, now_ms=2)
    assert not held.allowed
    assert held.reason == BURST_REASON
    assert held.reply == BURST_WARNING
    quiet = gate.handle(42, now=now, now_ms=3)
    assert quiet.reason == BURST_REASON
    assert quiet.reply == ""
    # burst-held messages are not counted
    assert store.get(42).messages_used_today == 2

    store.create(43, role=Role.VIP, now=now)
    for i in range(5):
        assert gate.handle(43, now=now, now_ms=i).allowed


def test_store_failure_fails_open(store, now):
    gate = _gate(store)
    with patch.object(store, "get_or_create", side_effect=OperationalError("SELECT", {}, Exception("locked"))):
        result = gate.handle(42, now=now, now_ms=0)
    assert result.allowed
    assert result.reason is None


def test_inbound_endpoint(client, gw_headers):
    r = client.post("/api/messages/inbound", json={"sender_id": 42, "username": "x"}, headers=gw_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["allowed"] is True
    assert body["remaining"] == TRIAL_MESSAGES_PER_DAY - 1

    r = client.post("/api/messages/inbound", json={"sender_id": 1}, headers=gw_headers)
    assert r.json()["remaining"] == "unlimited"


def test_inbound_requires_gateway_token(client):
    r = client.post("/api/messages/inbound", json={"sender_id": 42}, headers={"X-Gateway-Token": "nope"})
    assert r.status_code == 401


def test_plan_endpoint(client, gw_headers):
    client.post("/api/messages/inbound", json={"sender_id": 42}, headers=gw_headers)
    r = client.get("/api/users/42/plan", headers=gw_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["role"] == "trial"
    assert body["status"].startswith("Trial (")
    assert body["limits"]["messages_per_day"] == TRIAL_MESSAGES_PER_DAY
    assert body["totals"]["messages"] == 1
    assert client.get("/api/users/999/plan", headers=gw_headers).status_code == 404


def test_parallel_messages_cannot_overshoot_daily_limit(store, now):
    store.create(42, now=now)
    store.update(42, messages_used_today=TRIAL_MESSAGES_PER_DAY - 1, last_message_date="2025-03-10")
    gate = _gate(store)
    results = []

    def send(i):
        results.append(gate.handle(42, now=now, now_ms=i))

    threads = [threading.Thread(target=send, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 16
    assert sum(r.allowed for r in results) == 1
    assert store.get(42).messages_used_today == TRIAL_MESSAGES_PER_DAY
