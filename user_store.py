# user_store.py
"""
Durable per-user subscription / role / usage table.

One UserStore is built at process start (see main.lifespan) and handed to every
consumer. All writes happen inside a single DB transaction; the usage counters are
bumped with one UPDATE statement so a cancelled caller can never leave a half-applied
increment behind. Mutations for the same id are additionally serialized in-process by
a striped lock so read-modify-write helpers (get_or_create, extend_subscription) do
not lose updates.
"""
import json
import logging
import math
import os
import re
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from db import (
    LEGACY_FILENAME, Payment, User, database_url_for, init_db, make_engine,
    make_session_factory, store_dir, utcnow,
)
from models import UPDATABLE_FIELDS, LinkedGoogleAccount, Role, SubscriptionPlan, UserRecord

log = logging.getLogger("store")

DEFAULT_TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "7"))
_LOCK_STRIPES = 64
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class StoreError(Exception):
    pass


class UserNotFound(StoreError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class UserAlreadyExists(StoreError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} already exists")
        self.user_id = user_id


def today_str(now: datetime) -> str:
    """Calendar day (UTC) used by the lazy daily reset."""
    return now.strftime("%Y-%m-%d")


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, (Role, SubscriptionPlan)) else value


class UserStore:
    def __init__(self, data_dir: str, url: Optional[str] = None):
        self.data_dir = data_dir
        self.url = url or database_url_for(data_dir)
        self.legacy_path = store_dir(data_dir) / LEGACY_FILENAME
        self.engine = make_engine(self.url)
        self.SessionLocal = make_session_factory(self.engine)
        self._locks = [threading.RLock() for _ in range(_LOCK_STRIPES)]

    # ------------------------------------------------------------------ plumbing
    def ensure_schema(self) -> None:
        init_db(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self):
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _lock_for(self, user_id: int) -> threading.RLock:
        return self._locks[hash(user_id) % _LOCK_STRIPES]

    def user_lock(self, user_id: int) -> threading.RLock:
        """Re-entrant lock serializing work on one id; store calls on that id nest inside it."""
        return self._lock_for(user_id)

    # ------------------------------------------------------------------ CRUD
    def create(
        self,
        user_id: int,
        role: Role = Role.TRIAL,
        trial_days: Optional[int] = None,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserRecord:
        now = now or utcnow()
        role = Role(role)
        days = DEFAULT_TRIAL_DAYS if trial_days is None else trial_days
        with self._lock_for(user_id):
            try:
                with self._session() as db:
                    if db.get(User, user_id) is not None:
                        raise UserAlreadyExists(user_id)
                    row = User(
                        id=user_id,
                        username=username,
                        first_name=first_name,
                        last_name=last_name,
                        role=role.value,
                        created_at=now,
                        trial_expires_at=now + timedelta(days=days) if role is Role.TRIAL else None,
                        auto_renew=True,
                        messages_used_today=0,
                        last_message_date=today_str(now),
                        total_messages_used=0,
                        total_tokens_used=0,
                        total_cost_usd=0.0,
                    )
                    db.add(row)
                    db.flush()
                    record = UserRecord.model_validate(row)
            except IntegrityError as e:
                # another process inserted the same id between our check and flush
                raise UserAlreadyExists(user_id) from e
        log.info("Created user %s with role %s", user_id, role.value)
        return record

    def get(self, user_id: int) -> Optional[UserRecord]:
        with self._session() as db:
            row = db.get(User, user_id)
            return UserRecord.model_validate(row) if row is not None else None

    def get_or_create(self, user_id: int, **defaults: Any) -> UserRecord:
        """Return the existing record untouched, or create one from `defaults`."""
        with self._lock_for(user_id):
            existing = self.get(user_id)
            if existing is not None:
                return existing
            try:
                return self.create(user_id, **defaults)
            except UserAlreadyExists:
                return self.get(user_id)

    def update(self, user_id: int, now: Optional[datetime] = None, **fields: Any) -> UserRecord:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        now = now or utcnow()
        with self._lock_for(user_id):
            with self._session() as db:
                row = db.get(User, user_id)
                if row is None:
                    raise UserNotFound(user_id)
                for name, value in fields.items():
                    setattr(row, name, _enum_value(value))
                row.updated_at = now
                db.flush()
                return UserRecord.model_validate(row)

    def set_role(
        self,
        user_id: int,
        role: Role,
        trial_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> UserRecord:
        """
        Switch a user's role. A trial gets `trial_days` from now, or TRIAL_DAYS when it
        has no expiry yet; owner and vip drop the trial expiry.
        """
        role = Role(role)
        now = now or utcnow()
        fields: dict = {"role": role}
        with self._lock_for(user_id):
            current = self.get(user_id)
            if current is None:
                raise UserNotFound(user_id)
            if role is Role.TRIAL:
                if trial_days is not None:
                    fields["trial_expires_at"] = now + timedelta(days=trial_days)
                elif current.trial_expires_at is None:
                    fields["trial_expires_at"] = now + timedelta(days=DEFAULT_TRIAL_DAYS)
            elif role in (Role.OWNER, Role.VIP):
                fields["trial_expires_at"] = None
            return self.update(user_id, now=now, **fields)

    def delete(self, user_id: int) -> bool:
        with self._lock_for(user_id):
            with self._session() as db:
                row = db.get(User, user_id)
                if row is None:
                    return False
                db.delete(row)
        log.info("Deleted user %s", user_id)
        return True

    def list_all(self) -> List[UserRecord]:
        with self._session() as db:
            rows = db.scalars(select(User).order_by(User.id)).all()
            return [UserRecord.model_validate(r) for r in rows]

    def list_by_role(self, role: Role) -> List[UserRecord]:
        with self._session() as db:
            rows = db.scalars(
                select(User).where(User.role == Role(role).value).order_by(User.id)
            ).all()
            return [UserRecord.model_validate(r) for r in rows]

    def count(self) -> int:
        with self._session() as db:
            return int(db.scalar(select(func.count()).select_from(User)) or 0)

    # ------------------------------------------------------------------ usage
    def increment_usage(
        self, user_id: int, tokens: int = 0, cost: float = 0.0, now: Optional[datetime] = None
    ) -> None:
        """
        Count one allowed message. A stored daily counter from a previous day is
        treated as 0 before adding 1; all four counters move in a single statement.
        """
        now = now or utcnow()
        today = today_str(now)
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                messages_used_today=case(
                    (User.last_message_date == today, User.messages_used_today + 1),
                    else_=1,
                ),
                total_messages_used=User.total_messages_used + 1,
                total_tokens_used=User.total_tokens_used + int(tokens),
                total_cost_usd=User.total_cost_usd + float(cost),
                last_message_date=today,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._lock_for(user_id):
            with self._session() as db:
                result = db.execute(stmt)
                if result.rowcount == 0:
                    raise UserNotFound(user_id)

    # ------------------------------------------------------------------ sweeps
    def sweep_expired_trials(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = (
            update(User)
            .where(
                User.role == Role.TRIAL.value,
                User.trial_expires_at.is_not(None),
                User.trial_expires_at < now,
            )
            .values(role=Role.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            changed = db.execute(stmt).rowcount or 0
        if changed:
            log.info("Expired %d trial user(s)", changed)
        return changed

    def sweep_expired_subscriptions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = (
            update(User)
            .where(
                User.role == Role.SUBSCRIBER.value,
                User.subscription_expires_at.is_not(None),
                User.subscription_expires_at < now,
            )
            .values(role=Role.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            changed = db.execute(stmt).rowcount or 0
        if changed:
            log.info("Expired %d subscription(s)", changed)
        return changed

    # ------------------------------------------------------------------ linked identity
    def link_google_account(
        self, user_id: int, account: LinkedGoogleAccount, now: Optional[datetime] = None
    ) -> UserRecord:
        now = now or utcnow()
        with self._lock_for(user_id):
            self.get_or_create(user_id, now=now)
            return self.update(
                user_id,
                now=now,
                google_email=account.email,
                google_access_token=account.access_token,
                google_refresh_token=account.refresh_token,
                google_scope=account.scope,
                google_token_type=account.token_type,
                google_id_token=account.id_token,
                google_token_expires_at=account.expires_at,
                google_connected_at=now,
            )

    # ------------------------------------------------------------------ payments
    def extend_subscription(
        self,
        user_id: int,
        plan: SubscriptionPlan,
        charge_id: str,
        currency: str,
        amount: int,
        period: timedelta,
        now: Optional[datetime] = None,
    ) -> Tuple[UserRecord, bool]:
        """
        Apply one paid billing period. Returns (record, applied); applied is False when
        the charge reference was already processed.
        """
        now = now or utcnow()
        plan = SubscriptionPlan(plan)
        with self._lock_for(user_id):
            self.get_or_create(user_id, now=now)
            try:
                with self._session() as db:
                    seen = db.scalar(select(Payment.id).where(Payment.charge_id == charge_id))
                    if seen is not None:
                        return UserRecord.model_validate(db.get(User, user_id)), False

                    row = db.get(User, user_id)
                    current = row.subscription_expires_at
                    base = current if current is not None and current > now else now
                    row.subscription_expires_at = base + period
                    row.subscription_plan = plan.value
                    row.subscription_charge_id = charge_id
                    row.auto_renew = True
                    if row.role not in (Role.OWNER.value, Role.VIP.value):
                        row.role = Role.SUBSCRIBER.value
                    row.updated_at = now
                    db.add(Payment(
                        charge_id=charge_id, user_id=user_id, plan=plan.value,
                        currency=currency, amount=int(amount), created_at=now,
                    ))
                    db.flush()
                    record = UserRecord.model_validate(row)
            except IntegrityError:
                log.warning("Charge %s for user %s raced a duplicate delivery", charge_id, user_id)
                return self.get(user_id), False
        log.info("Extended %s subscription for user %s until %s", plan.value, user_id,
                 record.subscription_expires_at.isoformat())
        return record, True

    # ------------------------------------------------------------------ legacy import
    def migrate_legacy_snapshot(self, now: Optional[datetime] = None) -> int:
        """
        One-time import of the old users.json snapshot. Runs only while the table is
        empty, so calling it on every startup is harmless.
        """
        path = self.legacy_path
        if not path.exists():
            return 0
        if self.count() > 0:
            return 0

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Legacy snapshot %s unreadable, skipping import: %s", path, e)
            return 0
        if not isinstance(raw, list):
            log.warning("Legacy snapshot %s is not a list, skipping import", path)
            return 0

        now = now or utcnow()
        seen = set()
        imported = 0
        for entry in raw:
            row = _legacy_row(entry, now)
            if row is None:
                log.warning("Skipping malformed legacy user entry")
                continue
            if row.id in seen:
                continue
            seen.add(row.id)
            # one transaction per row; a row the database rejects is skipped
            try:
                with self._session() as db:
                    db.add(row)
            except (SQLAlchemyError, OverflowError) as e:
                log.warning("Skipping legacy user %s the database rejected: %s", row.id, type(e).__name__)
                continue
            imported += 1
        log.info("Imported %d user(s) from legacy snapshot %s", imported, path)
        return imported


# --- legacy parsing helpers ---------------------------------------------------
_BIGINT_MAX = 2 ** 63 - 1
_INT_MAX = 2 ** 31 - 1
_TEXT_MAX = 255


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _bigint(value: Any) -> Optional[int]:
    """Whole number that fits a signed 64-bit column, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        value = int(value)
    if not isinstance(value, int):
        return None
    return value if -_BIGINT_MAX - 1 <= value <= _BIGINT_MAX else None


def _ms_to_dt(value: Any) -> Optional[datetime]:
    ms = _finite_number(value)
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def _int(value: Any, default: int = 0, upper: int = _INT_MAX) -> int:
    num = _finite_number(value)
    return min(upper, max(0, int(num))) if num is not None else default


def _text(value: Any, limit: int = _TEXT_MAX) -> Optional[str]:
    return value[:limit] if isinstance(value, str) and value.strip() else None


def _legacy_row(entry: Any, now: datetime) -> Optional[User]:
    if not isinstance(entry, dict):
        return None
    user_id = _bigint(entry.get("telegramUserId", entry.get("id")))
    if user_id is None:
        return None

    try:
        role = Role(entry.get("role"))
    except ValueError:
        role = Role.EXPIRED

    plan = entry.get("subscriptionPlan")
    plan = plan if plan in (p.value for p in SubscriptionPlan) else None

    created_at = _ms_to_dt(entry.get("createdAt")) or now
    trial_expires_at = _ms_to_dt(entry.get("trialExpiresAt"))
    if role is Role.TRIAL and trial_expires_at is None:
        trial_expires_at = created_at + timedelta(days=DEFAULT_TRIAL_DAYS)

    last_date = entry.get("lastMessageDate")
    if not (isinstance(last_date, str) and _DATE_RE.match(last_date)):
        last_date = today_str(now)

    auto_renew = entry.get("autoRenew")
    invited_by = _bigint(entry.get("invitedBy"))

    return User(
        id=user_id,
        username=_text(entry.get("username")),
        first_name=_text(entry.get("firstName")),
        last_name=_text(entry.get("lastName")),
        role=role.value,
        created_at=created_at,
        updated_at=_ms_to_dt(entry.get("updatedAt")),
        trial_expires_at=trial_expires_at,
        subscription_plan=plan,
        subscription_expires_at=_ms_to_dt(entry.get("subscriptionExpiresAt")),
        subscription_charge_id=_text(entry.get("subscriptionChargeId")),
        auto_renew=auto_renew if isinstance(auto_renew, bool) else True,
        invited_by=invited_by,
        invite_code=_text(entry.get("inviteCode")),
        messages_used_today=_int(entry.get("messagesUsedToday")),
        last_message_date=last_date,
        total_messages_used=_int(entry.get("totalMessagesUsed")),
        total_tokens_used=_int(entry.get("totalTokensUsed"), upper=_BIGINT_MAX),
        total_cost_usd=_finite_number(entry.get("totalCostUsd")) or 0.0,
    )
