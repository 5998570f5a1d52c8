# health_routes.py
import logging

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

log = logging.getLogger("health")
router = APIRouter(prefix="/api")


@router.get("/health")
def health():
    # super fast: proves the app is mounted
    return {"ok": True}


@router.get("/ready")
def ready(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        return {"ok": False, "db": "down"}
    try:
        with store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"ok": True, "db": "up", "users": store.count()}
    except SQLAlchemyError as e:
        # don't expose internal traces
        log.warning("Readiness check failed: %s", type(e).__name__)
        return {"ok": False, "db": "down"}
