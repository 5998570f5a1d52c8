# -*- coding: utf-8 -*-
# admin_routes.py — operator endpoints (X-Admin-Token == ADMIN_API_TOKEN)
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from auth import require_admin_token
from db import utcnow
from models import Role
from user_store import UserNotFound, UserStore

log = logging.getLogger("admin")
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])

_SECRET_FIELDS = {"google_access_token", "google_refresh_token", "google_id_token"}


class SetRoleRequest(BaseModel):
    role: Role
    # only meaningful for role=trial; omitted keeps an existing expiry or starts TRIAL_DAYS
    trial_days: Optional[int] = None


def _store(request: Request) -> UserStore:
    return request.app.state.store


@router.get("/users")
def list_users(request: Request, role: Optional[Role] = None):
    store = _store(request)
    users = store.list_by_role(role) if role is not None else store.list_all()
    return {"count": len(users), "users": [u.model_dump(mode="json", exclude=_SECRET_FIELDS) for u in users]}


@router.get("/users/{user_id}")
def get_user(user_id: int, request: Request):
    user = _store(request).get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.model_dump(mode="json", exclude=_SECRET_FIELDS)


@router.post("/users/{user_id}/role")
def set_role(user_id: int, payload: SetRoleRequest, request: Request):
    """
    Admin-only: change a user's role.
    Body: { "role": "vip", "trial_days": null }
    """
    try:
        user = _store(request).set_role(user_id, payload.role, trial_days=payload.trial_days)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    log.info("Admin set role of %s to %s", user_id, payload.role.value)
    return {"id": user.id, "role": user.role.value,
            "trial_expires_at": user.trial_expires_at.isoformat() if user.trial_expires_at else None}


@router.delete("/users/{user_id}")
def delete_user(user_id: int, request: Request):
    if not _store(request).delete(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"ok": True, "deleted": user_id}


@router.post("/sweep")
def sweep(request: Request):
    store = _store(request)
    now = utcnow()
    return {
        "expired_trials": store.sweep_expired_trials(now),
        "expired_subscriptions": store.sweep_expired_subscriptions(now),
    }
