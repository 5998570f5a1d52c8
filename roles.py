# roles.py — single source of truth for what each role may do
import math
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Union, assert_never

from db import utcnow
from models import Role, SubscriptionPlan, UserRecord

UNLIMITED = "unlimited"
Limit = Union[int, Literal["unlimited"]]

TRIAL_MESSAGES_PER_DAY = int(os.getenv("TRIAL_MESSAGES_PER_DAY", "20"))
EXPIRED_MESSAGES_PER_DAY = int(os.getenv("EXPIRED_MESSAGES_PER_DAY", "2"))

_DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class RoleLimits:
    messages_per_day: Limit
    can_use_tools: bool
    can_use_web_search: bool
    model_tier: Literal["basic", "medium", "best"]


def message_limit(role: Role) -> Limit:
    return role_limits(role).messages_per_day


def role_limits(role: Role) -> RoleLimits:
    if role is Role.OWNER or role is Role.VIP or role is Role.SUBSCRIBER:
        return RoleLimits(UNLIMITED, can_use_tools=True, can_use_web_search=True, model_tier="best")
    elif role is Role.TRIAL:
        return RoleLimits(TRIAL_MESSAGES_PER_DAY, can_use_tools=False, can_use_web_search=True,
                          model_tier="medium")
    elif role is Role.EXPIRED:
        return RoleLimits(EXPIRED_MESSAGES_PER_DAY, can_use_tools=False, can_use_web_search=False,
                          model_tier="basic")
    else:
        assert_never(role)


def has_unlimited_access(user: UserRecord) -> bool:
    role = user.role
    if role is Role.OWNER or role is Role.VIP or role is Role.SUBSCRIBER:
        return True
    elif role is Role.TRIAL or role is Role.EXPIRED:
        return False
    else:
        assert_never(role)


def is_owner(user: UserRecord) -> bool:
    return user.role is Role.OWNER


def has_active_trial(user: UserRecord, now: Optional[datetime] = None) -> bool:
    if user.role is not Role.TRIAL or user.trial_expires_at is None:
        return False
    return (now or utcnow()) < user.trial_expires_at


def has_active_subscription(user: UserRecord, now: Optional[datetime] = None) -> bool:
    if user.role is not Role.SUBSCRIBER or user.subscription_expires_at is None:
        return False
    return (now or utcnow()) < user.subscription_expires_at


def days_until_expiration(moment: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    if moment is None:
        return None
    now = now or utcnow()
    if now >= moment:
        return 0
    return math.ceil((moment - now).total_seconds() / _DAY_SECONDS)


def format_expiration_date(moment: Optional[datetime]) -> Optional[str]:
    return moment.strftime("%Y-%m-%d") if moment is not None else None


def display_status(user: UserRecord, now: Optional[datetime] = None) -> str:
    """Short human label for the user's plan, e.g. 'Trial (3 days left)'."""
    role = user.role
    if role is Role.OWNER:
        return "Owner"
    elif role is Role.VIP:
        return "VIP"
    elif role is Role.SUBSCRIBER:
        if user.subscription_plan is SubscriptionPlan.PREMIUM:
            return "Premium Subscriber"
        return "Starter Subscriber"
    elif role is Role.TRIAL:
        if not has_active_trial(user, now):
            return "Trial Expired"
        return f"Trial ({days_until_expiration(user.trial_expires_at, now)} days left)"
    elif role is Role.EXPIRED:
        return "Expired"
    else:
        assert_never(role)
