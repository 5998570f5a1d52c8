import sys
from datetime import datetime
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from notifier import Notifier  # noqa: E402
from user_store import UserStore  # noqa: E402

GATEWAY_TOKEN = "gw-test-token"
ADMIN_TOKEN = "admin-test-token"
ADMIN_ID = 1


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send_text(self, user_id, text):
        self.sent.append((user_id, text))


@pytest.fixture
def now():
    return datetime(2025, 3, 10, 12, 0, 0)


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    s = UserStore(str(tmp_path))
    s.ensure_schema()
    yield s
    s.close()


@pytest.fixture
def oauth_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "client-123.apps.googleusercontent.com")
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("PUBLIC_URL", "https://bot.example.com")
    monkeypatch.delenv("GOOGLE_OAUTH_STATE_SECRET", raising=False)
    monkeypatch.delenv("GOOGLE_OAUTH_REDIRECT_URI", raising=False)
    monkeypatch.delenv("GOOGLE_OAUTH_SCOPES", raising=False)


@pytest.fixture
def client(tmp_path, monkeypatch):
    from fastapi.testclient import TestClient
    from main import app

    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("GATEWAY_TOKEN", GATEWAY_TOKEN)
    monkeypatch.setenv("ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("ADMIN_USER_IDS", str(ADMIN_ID))
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("DB_WARMUP_TRIES", "1")

    with TestClient(app) as c:
        c.app.state.notifier = RecordingNotifier()
        yield c


@pytest.fixture
def gw_headers():
    return {"X-Gateway-Token": GATEWAY_TOKEN}


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
