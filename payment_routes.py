from __future__ import annotations
import os, json, hmac, hashlib, logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from fastapi import APIRouter, HTTPException, Request, Depends
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from auth import require_gateway_token
from db import utcnow
from models import Role, SubscriptionPlan, UserRecord
from user_store import UserStore

log = logging.getLogger("payments")
router = APIRouter(prefix="/api/payments", tags=["payments"])

# ------------------------- Environment / Config ------------------------------

PAY_CURRENCY = os.getenv("PAY_CURRENCY", "XTR").strip().upper()
SUBSCRIPTION_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))
BOT_ACCOUNT_ID = os.getenv("BOT_ACCOUNT_ID", "default").strip() or "default"
WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "").strip()

PAYMENT_RECEIVED_CONTACT_ADMIN = "✅ Payment received. Please contact an administrator to verify activation."

# Pricing via env JSON (plan -> {amount, title, description, label})
# Example: {"starter":{"amount":100},"premium":{"amount":300}}
_DEFAULT_PRICING: Dict[str, Dict[str, Any]] = {
    "starter": {
        "amount": 100,
        "title": "Starter",
        "description": "30 days of access with the standard models.",
        "label": "Starter",
    },
    "premium": {
        "amount": 300,
        "title": "Premium",
        "description": "30 days of unlimited messages and the advanced models.",
        "label": "Premium",
    },
}


def _load_pricing() -> Dict[str, Dict[str, Any]]:
    pricing = {plan: dict(cfg) for plan, cfg in _DEFAULT_PRICING.items()}
    raw = os.getenv("PRICING_JSON", "").strip()
    if not raw:
        return pricing
    try:
        data = json.loads(raw)
        for plan, cfg in data.items():
            if plan not in pricing:
                log.warning("PRICING_JSON: ignoring unknown plan %r", plan)
                continue
            pricing[plan].update(cfg)
            pricing[plan]["amount"] = int(pricing[plan]["amount"])
    except (ValueError, TypeError, AttributeError, KeyError) as e:
        log.warning("Invalid PRICING_JSON, using defaults. %s", e)
        return {plan: dict(cfg) for plan, cfg in _DEFAULT_PRICING.items()}
    return pricing


PRICING = _load_pricing()

# ------------------------- Invoice payload ------------------------------------


@dataclass(frozen=True)
class InvoicePayload:
    user_id: int
    plan: SubscriptionPlan
    account_id: str


def build_invoice_payload(account_id: str, user_id: int, plan: SubscriptionPlan) -> str:
    return json.dumps({
        "v": 1,
        "kind": "subscription",
        "accountId": account_id,
        "userId": int(user_id),
        "plan": SubscriptionPlan(plan).value,
    })


def parse_invoice_payload(raw: str) -> Optional[InvoicePayload]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("v") != 1 or data.get("kind") != "subscription":
        return None
    user_id = data.get("userId")
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        return None
    account_id = data.get("accountId")
    if not isinstance(account_id, str) or not account_id.strip():
        return None
    try:
        plan = SubscriptionPlan(data.get("plan"))
    except ValueError:
        return None
    return InvoicePayload(user_id=user_id, plan=plan, account_id=account_id)


def price_for(plan: SubscriptionPlan) -> int:
    return int(PRICING[SubscriptionPlan(plan).value]["amount"])


# ------------------------- Validation / application ---------------------------

def validate_pre_checkout(
    raw_payload: str,
    currency: str,
    total_amount: int,
    payer_id: int,
    account_id: str = BOT_ACCOUNT_ID,
) -> Optional[str]:
    """Returns None to approve, or the error text to show the payer."""
    payload = parse_invoice_payload(raw_payload)
    if payload is None:
        return "Invalid payment data."
    if (currency or "").upper() != PAY_CURRENCY:
        return f"Only payments in {PAY_CURRENCY} are supported."
    if payload.account_id != account_id:
        return "This invoice was issued by a different bot account."
    if payload.user_id != payer_id:
        return "Only the invoice recipient can pay it."
    if total_amount != price_for(payload.plan):
        return "The payment amount does not match the selected plan."
    return None


@dataclass(frozen=True)
class PaymentOutcome:
    status: str  # activated | duplicate | rejected
    reply: str
    user: Optional[UserRecord] = None


def _activation_reply(user: UserRecord) -> str:
    plan = "Premium" if user.subscription_plan is SubscriptionPlan.PREMIUM else "Starter"
    until = user.subscription_expires_at.strftime("%Y-%m-%d")
    return (
        "✅ Subscription activated!\n\n"
        f"🎯 Plan: {plan}\n"
        f"⏱ Until: {until}\n"
        "🔄 Auto-renew: on"
    )


def apply_successful_payment(
    store: UserStore,
    raw_payload: str,
    currency: str,
    total_amount: int,
    charge_id: str,
    now: Optional[datetime] = None,
) -> PaymentOutcome:
    payload = parse_invoice_payload(raw_payload)
    if payload is None:
        log.error("successful payment %s: invalid invoice payload", charge_id)
        return PaymentOutcome("rejected", PAYMENT_RECEIVED_CONTACT_ADMIN)

    expected = price_for(payload.plan)
    if (currency or "").upper() != PAY_CURRENCY or total_amount != expected:
        log.error("successful payment mismatch: currency=%s amount=%s plan=%s",
                  currency, total_amount, payload.plan.value)
        return PaymentOutcome("rejected", PAYMENT_RECEIVED_CONTACT_ADMIN)

    user, applied = store.extend_subscription(
        payload.user_id,
        plan=payload.plan,
        charge_id=charge_id,
        currency=PAY_CURRENCY,
        amount=total_amount,
        period=timedelta(days=SUBSCRIPTION_PERIOD_DAYS),
        now=now or utcnow(),
    )
    if not applied:
        log.info("Charge %s already processed; not extending again", charge_id)
        return PaymentOutcome("duplicate", "✅ This payment was already applied.", user)
    return PaymentOutcome("activated", _activation_reply(user), user)


# ------------------------- Routes -------------------------------------------

@router.get("/subscription-config")
def subscription_config():
    return {
        "currency": PAY_CURRENCY,
        "period_days": SUBSCRIPTION_PERIOD_DAYS,
        "pricing": PRICING,
    }


class InvoiceBody(BaseModel):
    user_id: int
    plan: SubscriptionPlan


@router.post("/invoice", dependencies=[Depends(require_gateway_token)])
def create_invoice(body: InvoiceBody, request: Request):
    store: UserStore = request.app.state.store
    user = store.get(body.user_id)
    if user is not None and user.role is Role.OWNER:
        raise HTTPException(409, "Owner accounts do not need a subscription.")
    p = PRICING[body.plan.value]
    return {
        "title": p.get("title", body.plan.value.title()),
        "description": p.get("description", ""),
        "label": p.get("label", body.plan.value.title()),
        "currency": PAY_CURRENCY,
        "amount": int(p["amount"]),
        "payload": build_invoice_payload(BOT_ACCOUNT_ID, body.user_id, body.plan),
    }


class PreCheckoutBody(BaseModel):
    payer_id: int
    invoice_payload: str
    currency: str
    total_amount: int


@router.post("/pre-checkout", dependencies=[Depends(require_gateway_token)])
def pre_checkout(body: PreCheckoutBody):
    error = validate_pre_checkout(body.invoice_payload, body.currency, body.total_amount, body.payer_id)
    if error:
        log.info("Pre-checkout rejected for payer %s: %s", body.payer_id, error)
        return {"ok": False, "error_message": error}
    return {"ok": True}


class SuccessfulPaymentBody(BaseModel):
    invoice_payload: str
    currency: str
    total_amount: int
    charge_id: str


@router.post("/successful", dependencies=[Depends(require_gateway_token)])
async def successful_payment(request: Request):
    """
    Authoritative activation. When PAYMENT_WEBHOOK_SECRET is set the raw body must
    carry a hex HMAC-SHA256 in X-Payment-Signature.
    """
    body = await request.body()
    if WEBHOOK_SECRET:
        signature = request.headers.get("X-Payment-Signature", "")
        expected = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature or ""):
            raise HTTPException(401, "Invalid signature")

    try:
        event = SuccessfulPaymentBody.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_url=False)) from e

    store: UserStore = request.app.state.store
    outcome = await run_in_threadpool(
        apply_successful_payment, store, event.invoice_payload, event.currency,
        event.total_amount, event.charge_id,
    )
    user = outcome.user
    return {
        "ok": outcome.status != "rejected",
        "status": outcome.status,
        "reply": outcome.reply,
        "subscription_expires_at": (
            user.subscription_expires_at.isoformat()
            if user is not None and user.subscription_expires_at else None
        ),
    }
