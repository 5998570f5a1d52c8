# -*- coding: utf-8 -*-
# models.py — domain types shared by the store, policy and routes
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    OWNER = "owner"
    VIP = "vip"
    SUBSCRIBER = "subscriber"
    TRIAL = "trial"
    EXPIRED = "expired"


class SubscriptionPlan(str, Enum):
    STARTER = "starter"
    PREMIUM = "premium"


class UserRecord(BaseModel):
    """
    Read-only snapshot of one row of the users table.
    The store hands these out; mutations go back through UserStore.update().
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    role: Role
    created_at: datetime
    updated_at: Optional[datetime] = None

    trial_expires_at: Optional[datetime] = None

    subscription_plan: Optional[SubscriptionPlan] = None
    subscription_expires_at: Optional[datetime] = None
    subscription_charge_id: Optional[str] = None
    auto_renew: bool = True

    invited_by: Optional[int] = None
    invite_code: Optional[str] = None

    messages_used_today: int = Field(default=0, ge=0)
    last_message_date: str

    total_messages_used: int = 0
    total_tokens_used: int = 0
    total_cost_usd: float = 0.0

    google_email: Optional[str] = None
    google_access_token: Optional[str] = Field(default=None, repr=False)
    google_refresh_token: Optional[str] = Field(default=None, repr=False)
    google_scope: Optional[str] = None
    google_token_type: Optional[str] = None
    google_id_token: Optional[str] = Field(default=None, repr=False)
    google_token_expires_at: Optional[datetime] = None
    google_connected_at: Optional[datetime] = None


# Fields update() may touch. id and created_at are immutable.
UPDATABLE_FIELDS = frozenset(
    name for name in UserRecord.model_fields if name not in ("id", "created_at")
)


class LinkedGoogleAccount(BaseModel):
    email: Optional[str] = None
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    scope: Optional[str] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
