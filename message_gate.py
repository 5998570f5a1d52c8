# message_gate.py — the per-message control flow:
#   resolve record -> repair admin drift -> access decision -> burst guard -> count usage
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from access_control import AccessDenied, can_send_message, format_denial_message, remaining_messages
from admin_bootstrap import ensure_owner, is_admin
from burst_guard import BurstGuard
from db import utcnow
from models import Role, UserRecord
from roles import Limit
from user_store import StoreError, UserStore

log = logging.getLogger("gate")

BURST_REASON = "burst"
BURST_WARNING = "⚠️ Too many messages in a row. Wait a few seconds and try again."


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: Optional[str] = None
    reply: str = ""
    remaining: Optional[Limit] = None
    user: Optional[UserRecord] = None


class MessageGate:
    def __init__(
        self,
        store: UserStore,
        admin_ids: Iterable[int],
        burst_guard: BurstGuard,
        trial_days: Optional[int] = None,
    ):
        self.store = store
        self.admin_ids = frozenset(admin_ids)
        self.burst_guard = burst_guard
        self.trial_days = trial_days

    def resolve_user(self, sender_id: int, now: Optional[datetime] = None, **profile) -> UserRecord:
        """get_or_create the sender; admins are created as (or repaired back to) owner."""
        if is_admin(sender_id, self.admin_ids):
            return ensure_owner(self.store, sender_id, now=now, **profile)
        return self.store.get_or_create(
            sender_id, role=Role.TRIAL, trial_days=self.trial_days, now=now, **profile
        )

    def handle(
        self,
        sender_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        now: Optional[datetime] = None,
        now_ms: Optional[int] = None,
    ) -> GateResult:
        now = now or utcnow()
        try:
            # decide and count under the same per-id lock
            with self.store.user_lock(sender_id):
                user = self.resolve_user(
                    sender_id, now=now, username=username, first_name=first_name, last_name=last_name
                )

                decision = can_send_message(user, now)
                if isinstance(decision, AccessDenied):
                    log.info("Denied message from %s: %s", sender_id, decision.reason.value)
                    return GateResult(
                        allowed=False,
                        reason=decision.reason.value,
                        reply=format_denial_message(decision),
                        remaining=remaining_messages(user, now),
                        user=user,
                    )

                if user.role is Role.TRIAL or user.role is Role.EXPIRED:
                    burst = self.burst_guard.check(sender_id, now_ms)
                    if not burst.allowed:
                        log.info("Burst guard held back message from %s", sender_id)
                        return GateResult(
                            allowed=False,
                            reason=BURST_REASON,
                            reply=BURST_WARNING if burst.should_warn else "",
                            user=user,
                        )

                self.store.increment_usage(sender_id, now=now)
                user = self.store.get(sender_id) or user
        except (StoreError, SQLAlchemyError):
            # fail open: a broken store must not silence the bot
            log.error("Access control check failed for user %s", sender_id, exc_info=True)
            return GateResult(allowed=True)

        return GateResult(allowed=True, remaining=remaining_messages(user, now), user=user)
