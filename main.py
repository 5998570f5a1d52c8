# -*- coding: utf-8 -*-
# main.py — subgate backend (resilient startup, message gate, plan lookups)

import os
import asyncio
import logging
import traceback
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from access_control import remaining_messages
from admin_bootstrap import admin_ids_from_env, reconcile_owners
from auth import require_gateway_token
from burst_guard import BurstGuard
from db import default_data_dir, utcnow
from message_gate import MessageGate
from notifier import notifier_from_env
from roles import display_status, format_expiration_date, role_limits
from user_store import UserStore

import admin_bootstrap
import admin_routes
import health_routes
import oauth_routes
import payment_routes

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("subgate")

VERSION = "0.1.0"

# --------------------------------------------------------------------------------------
# Lifespan: warm the store with retries, migrate, reconcile owners, start the sweeper
# --------------------------------------------------------------------------------------
STARTUP_OK = False
STARTUP_ERROR = ""


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() + "Z" if moment is not None else None


def run_sweep(store: UserStore) -> int:
    now = utcnow()
    return store.sweep_expired_trials(now) + store.sweep_expired_subscriptions(now)


async def _sweep_loop(store: UserStore, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_sweep, store)
        except SQLAlchemyError as e:
            logger.warning("Expiry sweep failed: %s", e)


async def _warm_store(store: UserStore):
    tries = int(os.getenv("DB_WARMUP_TRIES", "20"))
    delay = float(os.getenv("DB_WARMUP_DELAY", "1.5"))
    for i in range(tries):
        try:
            store.ensure_schema()
            return
        except (SQLAlchemyError, OSError) as e:
            if i + 1 >= tries:
                raise
            logger.warning("ensure_schema attempt %s/%s failed: %s", i + 1, tries, e)
            await asyncio.sleep(delay)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global STARTUP_OK, STARTUP_ERROR
    store = UserStore(default_data_dir())
    admin_ids = admin_ids_from_env()
    app.state.store = store
    app.state.admin_ids = admin_ids
    app.state.notifier = notifier_from_env()
    app.state.gate = MessageGate(store, admin_ids, BurstGuard.from_env())

    sweeper = None
    try:
        await _warm_store(store)
        store.migrate_legacy_snapshot()
        reconcile_owners(store, admin_ids)
        run_sweep(store)
        interval = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
        if interval > 0:
            sweeper = asyncio.create_task(_sweep_loop(store, interval))
        STARTUP_OK = True
        STARTUP_ERROR = ""
    except Exception:
        STARTUP_OK = False
        STARTUP_ERROR = traceback.format_exc()
        logger.error("Startup failed:\n%s", STARTUP_ERROR)
        # still serve so health/ready endpoints respond with details

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        store.close()


app = FastAPI(title="subgate", version=VERSION, lifespan=lifespan)

# --------------------------------------------------------------------------------------
# CORS
# --------------------------------------------------------------------------------------
ALLOWED_ORIGINS = [o.strip() for o in (os.getenv("ALLOWED_ORIGINS") or "").split(",") if o.strip()]

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

app.include_router(health_routes.router)
app.include_router(admin_bootstrap.router)
app.include_router(admin_routes.router)
app.include_router(payment_routes.router)
app.include_router(oauth_routes.router)


@app.get("/")
def root():
    return {"ok": True, "service": "subgate", "version": VERSION, "startup_ok": STARTUP_OK}


# --------------------------------------------------------------------------------------
# Message gate
# --------------------------------------------------------------------------------------
class InboundMessage(BaseModel):
    sender_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@app.post("/api/messages/inbound", dependencies=[Depends(require_gateway_token)])
async def inbound_message(msg: InboundMessage, request: Request):
    gate: MessageGate = request.app.state.gate
    result = await run_in_threadpool(
        gate.handle, msg.sender_id,
        username=msg.username, first_name=msg.first_name, last_name=msg.last_name,
    )
    return {
        "allowed": result.allowed,
        "reason": result.reason,
        "reply": result.reply,
        "remaining": result.remaining,
    }


# --------------------------------------------------------------------------------------
# Plan summary (/plan, /status in the chat)
# --------------------------------------------------------------------------------------
@app.get("/api/users/{user_id}/plan", dependencies=[Depends(require_gateway_token)])
def user_plan(user_id: int, request: Request):
    store: UserStore = request.app.state.store
    user = store.get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    now = utcnow()
    limits = role_limits(user.role)
    return {
        "id": user.id,
        "role": user.role.value,
        "status": display_status(user, now),
        "limits": {
            "messages_per_day": limits.messages_per_day,
            "can_use_tools": limits.can_use_tools,
            "can_use_web_search": limits.can_use_web_search,
            "model_tier": limits.model_tier,
        },
        "remaining_today": remaining_messages(user, now),
        "trial_expires_at": _iso(user.trial_expires_at),
        "trial_expires_on": format_expiration_date(user.trial_expires_at),
        "subscription_plan": user.subscription_plan.value if user.subscription_plan else None,
        "subscription_expires_at": _iso(user.subscription_expires_at),
        "subscription_expires_on": format_expiration_date(user.subscription_expires_at),
        "auto_renew": user.auto_renew,
        "google_email": user.google_email,
        "totals": {
            "messages": user.total_messages_used,
            "tokens": user.total_tokens_used,
            "cost_usd": user.total_cost_usd,
        },
    }
