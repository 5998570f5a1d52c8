# db.py
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    create_engine, event, Column, Integer, BigInteger, String, Boolean, DateTime, Float, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import sessionmaker, declarative_base

STORE_DIRNAME = ".subgate"
DB_FILENAME = "users.db"
LEGACY_FILENAME = "users.json"


# --- DB URL normalizer (Render/Heroku compatibility) -------------------------
def _normalize_db_url(url: str) -> str:
    # Heroku-style URLs use postgres://; SQLAlchemy expects postgresql://
    return url.replace("postgres://", "postgresql://", 1) if url.startswith("postgres://") else url


def default_data_dir() -> str:
    return os.getenv("DATA_DIR") or os.getenv("HOME") or "/tmp"


def store_dir(data_dir: str) -> Path:
    """Directory holding the store files; created on demand."""
    path = Path(data_dir) / STORE_DIRNAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def database_url_for(data_dir: str) -> str:
    explicit = _normalize_db_url(os.getenv("DATABASE_URL", "").strip())
    if explicit:
        return explicit
    return f"sqlite:///{store_dir(data_dir) / DB_FILENAME}"


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def make_engine(url: str):
    # SQLite needs this flag for multi-threaded FastAPI usage
    connect_args = {"check_same_thread": False, "timeout": 5} if url.startswith("sqlite") else {}
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=5000")
            cur.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


Base = declarative_base()


# --- Models -------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)

    role = Column(String(32), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    trial_expires_at = Column(DateTime, nullable=True)

    subscription_plan = Column(String(32), nullable=True)
    subscription_expires_at = Column(DateTime, nullable=True, index=True)
    subscription_charge_id = Column(String(255), nullable=True)
    auto_renew = Column(Boolean, default=True, nullable=False)

    invited_by = Column(BigInteger, nullable=True)
    invite_code = Column(String(255), nullable=True)

    messages_used_today = Column(Integer, default=0, nullable=False)
    last_message_date = Column(String(10), nullable=False)  # YYYY-MM-DD (UTC)

    total_messages_used = Column(Integer, default=0, nullable=False)
    total_tokens_used = Column(BigInteger, default=0, nullable=False)
    total_cost_usd = Column(Float, default=0.0, nullable=False)

    google_email = Column(String(255), nullable=True)
    google_access_token = Column(Text, nullable=True)
    google_refresh_token = Column(Text, nullable=True)
    google_scope = Column(Text, nullable=True)
    google_token_type = Column(String(32), nullable=True)
    google_id_token = Column(Text, nullable=True)
    google_token_expires_at = Column(DateTime, nullable=True)
    google_connected_at = Column(DateTime, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("charge_id", name="uq_payments_charge_id"),)

    id = Column(Integer, primary_key=True, index=True)
    charge_id = Column(String(255), nullable=False)
    user_id = Column(BigInteger, nullable=False, index=True)
    plan = Column(String(32), nullable=False)
    currency = Column(String(8), nullable=False)
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)


# --- Helpers ------------------------------------------------------------------
def init_db(engine):
    Base.metadata.create_all(bind=engine)
