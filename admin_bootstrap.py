# admin_bootstrap.py
# Keeps every id in ADMIN_USER_IDS on the owner role, at startup and on demand.
import logging
import os
from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends, Request

from auth import require_admin_token
from models import Role, UserRecord
from user_store import UserStore

log = logging.getLogger("admin_bootstrap")

router = APIRouter(prefix="/api/admin_bootstrap", tags=["admin"])


def parse_admin_ids(raw: Optional[str]) -> List[int]:
    """
    "123, abc ,456," -> [123, 456]. Bad entries are dropped, never raised on:
    a broken admin list means fewer admins, not a crashed process.
    """
    if not raw or not raw.strip():
        return []
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            log.warning("Ignoring non-numeric admin id %r", part)
    return ids


def admin_ids_from_env() -> List[int]:
    return parse_admin_ids(os.getenv("ADMIN_USER_IDS", ""))


def is_admin(user_id: int, admin_ids: Iterable[int]) -> bool:
    return user_id in admin_ids


def _needs_repair(user: UserRecord) -> bool:
    return user.role is not Role.OWNER or user.trial_expires_at is not None


def ensure_owner(store: UserStore, user_id: int, **profile) -> UserRecord:
    """get_or_create the record, then force owner role and drop any trial expiry."""
    user = store.get_or_create(user_id, role=Role.OWNER, **profile)
    if _needs_repair(user):
        log.warning("Repairing role drift for admin %s (role=%s)", user_id, user.role.value)
        user = store.update(user_id, role=Role.OWNER, trial_expires_at=None)
    return user


def reconcile_owners(store: UserStore, admin_ids: Iterable[int]) -> int:
    """Idempotent; returns how many records had to be written."""
    written = 0
    for user_id in admin_ids:
        before = store.get(user_id)
        after = ensure_owner(store, user_id)
        if before is None or before != after:
            written += 1
    if written:
        log.info("Reconciled %d owner record(s)", written)
    return written


@router.post("/reconcile", dependencies=[Depends(require_admin_token)])
def reconcile(request: Request):
    store: UserStore = request.app.state.store
    admin_ids = request.app.state.admin_ids
    written = reconcile_owners(store, admin_ids)
    return {"ok": True, "admins": list(admin_ids), "written": written}
