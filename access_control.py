# access_control.py — decides whether one inbound message may pass
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union, assert_never

from db import utcnow
from models import Role, UserRecord
from roles import UNLIMITED, Limit, has_unlimited_access, message_limit
from user_store import today_str


class DenyReason(str, Enum):
    LIMIT_EXCEEDED = "limit_exceeded"
    TRIAL_EXPIRED = "trial_expired"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


@dataclass(frozen=True)
class AccessAllowed:
    allowed: bool = True


@dataclass(frozen=True)
class AccessDenied:
    reason: DenyReason
    expires_at: Optional[datetime] = None   # trial / subscription expiry
    remaining: int = 0
    resets_at: Optional[datetime] = None    # next UTC midnight, limit_exceeded only
    allowed: bool = False


AccessResult = Union[AccessAllowed, AccessDenied]


def next_utc_midnight(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day) + timedelta(days=1)


def _used_today(user: UserRecord, now: datetime) -> int:
    # lazy daily reset: a counter from another day counts as zero
    return user.messages_used_today if user.last_message_date == today_str(now) else 0


def can_send_message(user: UserRecord, now: Optional[datetime] = None) -> AccessResult:
    now = now or utcnow()

    # Expiry checks run before the unlimited shortcut.
    if user.role is Role.TRIAL and user.trial_expires_at is not None:
        if now > user.trial_expires_at:
            return AccessDenied(DenyReason.TRIAL_EXPIRED, expires_at=user.trial_expires_at)

    if user.role is Role.SUBSCRIBER and user.subscription_expires_at is not None:
        if now > user.subscription_expires_at:
            return AccessDenied(DenyReason.SUBSCRIPTION_EXPIRED, expires_at=user.subscription_expires_at)

    if has_unlimited_access(user):
        return AccessAllowed()

    limit = message_limit(user.role)
    if limit == UNLIMITED:
        return AccessAllowed()

    if _used_today(user, now) >= limit:
        return AccessDenied(DenyReason.LIMIT_EXCEEDED, remaining=0, resets_at=next_utc_midnight(now))

    return AccessAllowed()


def remaining_messages(user: UserRecord, now: Optional[datetime] = None) -> Limit:
    now = now or utcnow()
    if has_unlimited_access(user):
        return UNLIMITED
    limit = message_limit(user.role)
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - _used_today(user, now))


def format_denial_message(result: AccessResult) -> str:
    if isinstance(result, AccessAllowed):
        return ""

    reason = result.reason
    if reason is DenyReason.LIMIT_EXCEEDED:
        reset_hour = result.resets_at.hour if result.resets_at is not None else 0
        return (
            "❌ You have reached your daily message limit.\n\n"
            f"⏱ The limit resets at {reset_hour:02d}:00 UTC.\n\n"
            "💡 Want more? Use /subscribe"
        )
    elif reason is DenyReason.TRIAL_EXPIRED:
        return "❌ Your trial period has ended.\n\n💡 Subscribe to keep going: /subscribe"
    elif reason is DenyReason.SUBSCRIPTION_EXPIRED:
        return "❌ Your subscription has expired.\n\n💡 Renew it: /subscribe"
    else:
        assert_never(reason)
