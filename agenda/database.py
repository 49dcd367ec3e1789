import logging
import os
import time

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

logger = logging.getLogger(__name__)

# Pool sizing (ignored for SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
LOG_SLOW_QUERIES = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
SLOW_QUERY_SECONDS = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # FastAPI runs sync dependencies in a threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_timeout": DB_POOL_TIMEOUT,
        "pool_recycle": DB_POOL_RECYCLE,
    }


try:
    engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))
except Exception as e:
    logger.error(f"❌ Could not create database engine for {DATABASE_URL.split('://')[0]}: {e}")
    raise

if DATABASE_URL.startswith("sqlite"):
    logger.info("✅ Database engine ready (sqlite)")
else:
    logger.info(
        f"✅ Database engine ready (pool={DB_POOL_SIZE}+{DB_MAX_OVERFLOW}, "
        f"timeout={DB_POOL_TIMEOUT}s, recycle={DB_POOL_RECYCLE}s)"
    )


def _track_query_start(conn, _cursor, _statement, _parameters, _context, _executemany):
    conn.info.setdefault("billing_query_started", []).append(time.perf_counter())


def _report_slow_query(conn, _cursor, statement, _parameters, _context, _executemany):
    elapsed = time.perf_counter() - conn.info["billing_query_started"].pop()
    if elapsed > SLOW_QUERY_SECONDS:
        logger.warning(f"🐌 Query took {elapsed:.2f}s: {statement[:200]}")


if LOG_SLOW_QUERIES:
    event.listen(engine, "before_cursor_execute", _track_query_start)
    event.listen(engine, "after_cursor_execute", _report_slow_query)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Request-scoped session; wallet and sync services commit their own units of work"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
