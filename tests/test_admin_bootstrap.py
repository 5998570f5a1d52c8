from datetime import timedelta

from admin_bootstrap import ensure_owner, parse_admin_ids, reconcile_owners
from models import Role


def test_parse_admin_ids_drops_bad_entries():
    assert parse_admin_ids("123, abc ,456,") == [123, 456]
    assert parse_admin_ids("") == []
    assert parse_admin_ids(None) == []
    assert parse_admin_ids(" , ,") == []


def test_reconcile_creates_owners(store):
    assert reconcile_owners(store, [10, 11]) == 2
    assert store.get(10).role is Role.OWNER
    assert store.get(10).trial_expires_at is None


def test_reconcile_is_idempotent(store):
    reconcile_owners(store, [10])
    first = store.get(10)
    assert reconcile_owners(store, [10]) == 0
    assert store.get(10) == first


def test_reconcile_repairs_demoted_owner(store, now):
    reconcile_owners(store, [10])
    store.update(10, role=Role.TRIAL, trial_expires_at=now + timedelta(days=7))
    assert reconcile_owners(store, [10]) == 1
    user = store.get(10)
    assert user.role is Role.OWNER
    assert user.trial_expires_at is None


def test_ensure_owner_clears_stale_trial_expiry(store, now):
    store.create(20, role=Role.OWNER, now=now)
    store.update(20, trial_expires_at=now)
    assert ensure_owner(store, 20).trial_expires_at is None


def test_reconcile_endpoint(client, admin_headers):
    r = client.post("/api/admin_bootstrap/reconcile", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["admins"] == [1]
    # startup already reconciled
    assert body["written"] == 0


def test_reconcile_endpoint_requires_token(client):
    assert client.post("/api/admin_bootstrap/reconcile").status_code == 403
