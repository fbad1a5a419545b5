from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

logger = logging.getLogger(__name__)

# ---------- Engine / Session ----------
DB_URL = settings.db_url

DEMO_USER = {"name": "Demo User", "email": "demo@example.com", "password": "demopass"}

DEFAULT_EXCHANGES = [
    {"name": "Binance", "base_url": "https://api.binance.com"},
    {"name": "Coinbase", "base_url": "https://api.exchange.coinbase.com"},
    {"name": "Kraken", "base_url": "https://api.kraken.com"},
]


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # FastAPI runs sync endpoints in a threadpool
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every thread gets its own empty DB.
            # Sessions on different threads then share its transaction; point
            # CRYPTO_PORTFOLIO_DB_URL at a sqlite file when serving concurrent clients.
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, echo=False, **kwargs)
    return create_engine(url, future=True, echo=False)


# echo=False to keep tests quiet
_engine: Engine = _make_engine(DB_URL)
# Expose the engine so other modules can import it
engine = _engine

SessionLocal = sessionmaker(
    bind=_engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


# ---------- Init helpers ----------

def seed_demo_data(session: Session) -> None:
    """
    Insert the demo account and the known exchanges if they are missing.
    Safe to call on every start.
    """
    from .models import Exchange, User
    from .security import hash_password

    demo_email = DEMO_USER["email"]
    if session.scalars(select(User).where(User.email == demo_email)).first() is None:
        session.add(
            User(
                name=DEMO_USER["name"],
                email=demo_email,
                password=hash_password(DEMO_USER["password"]),
            )
        )

    existing = set(session.scalars(select(Exchange.name)).all())
    for ex in DEFAULT_EXCHANGES:
        if ex["name"] not in existing:
            session.add(Exchange(name=ex["name"], base_url=ex["base_url"]))

    session.commit()


def init_db(seed: bool = True) -> None:
    """
    Create ORM tables (no-ops on existing) and seed demo data.
    """
    # Import models here to avoid circular imports
    from .models import Base

    Base.metadata.create_all(bind=_engine)
    if seed:
        with SessionLocal() as session:
            seed_demo_data(session)
    logger.debug("Database ready at %s", DB_URL)


def reset_db() -> None:
    """Drop everything and start over. Used by the test-suite."""
    from .models import Base

    Base.metadata.drop_all(bind=_engine)
    init_db()


# FastAPI dependency
def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# convenience context manager used outside of request handlers
@contextmanager
def db_session() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
