# rewardledger/db.py
"""
Engine and session factory.

DATABASE_URL may be a hosted Postgres URL (postgres:// or postgresql://,
driven through psycopg 3 and put on SSL unless it points at this host) or
any SQLite URL. Unset falls back to a local SQLite file.
"""
import os
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

LOCAL_SQLITE_URL = "sqlite:///./rewardledger.db"
_LOCAL_HOSTS = ("localhost", "127.0.0.1")
_BARE_POSTGRES = ("postgres://", "postgresql://")


def database_url(raw: Optional[str]) -> str:
    url = (raw or "").strip()
    if not url:
        return LOCAL_SQLITE_URL
    for prefix in _BARE_POSTGRES:
        if url.startswith(prefix):
            url = "postgresql+psycopg://" + url[len(prefix):]
            break
    if url.startswith("postgresql") and "sslmode=" not in url and not any(h in url for h in _LOCAL_HOSTS):
        url += ("&" if "?" in url else "?") + "sslmode=require"
    return url


DATABASE_URL = database_url(os.getenv("DATABASE_URL"))
IS_SQLITE = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    # request handlers run on a threadpool
    connect_args={"check_same_thread": False} if IS_SQLITE else {},
)


def enable_sqlite_savepoints(target: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT (begin_nested) works.

    Reward idempotency relies on nested transactions around inserts.
    """

    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


if IS_SQLITE:
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(bind=engine, autoflush=False)

Base = declarative_base()


def get_db() -> Iterator[Session]:
    """Request-scoped session; closed when the response is done."""
    with SessionLocal() as db:
        yield db


def init_db(bind=None) -> None:
    """Create missing tables."""
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database tables ensured on {}", target.url.render_as_string(hide_password=True))
