# notifier.py — push a text to a sender through the messaging transport
import logging
import os
from typing import Optional

import requests

log = logging.getLogger("notifier")


class Notifier:
    def send_text(self, user_id: int, text: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Used when no transport webhook is configured."""

    def send_text(self, user_id: int, text: str) -> None:
        log.info("notify user=%s: %s", user_id, text)


class WebhookNotifier(Notifier):
    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    def send_text(self, user_id: int, text: str) -> None:
        headers = {"X-Gateway-Token": self.token} if self.token else {}
        resp = requests.post(self.url, json={"user_id": user_id, "text": text},
                             headers=headers, timeout=self.timeout)
        resp.raise_for_status()


def notifier_from_env() -> Notifier:
    url = os.getenv("NOTIFY_WEBHOOK_URL", "").strip()
    if url:
        return WebhookNotifier(url, token=os.getenv("GATEWAY_TOKEN", "").strip() or None)
    return LogNotifier()


def notify_user(notifier: Notifier, user_id: int, text: str) -> bool:
    """Best effort; failures are logged and reported as False, never raised."""
    try:
        notifier.send_text(user_id, text)
        return True
    except requests.RequestException as e:
        log.warning("Notification to user %s failed: %s", user_id, e)
        return False
