"""Database connection and session management.

Supports multiple database types:
- SQLite (development, testing, small deployments)
- PostgreSQL (production)
- MySQL/MariaDB (production)

Database type is auto-detected from the DATABASE_URL connection string.
"""

import logging
from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from silverbullet.config import get_settings
from silverbullet.db.models import Base

logger = logging.getLogger(__name__)

# Engine and session factory will be initialized on first use
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def create_database_engine(db_url: str | None = None) -> Engine:
    """Create SQLAlchemy engine with database-specific configuration.

    Parameters
    ----------
    db_url : str, optional
        Connection string; defaults to the configured DATABASE_URL

    Returns
    -------
        SQLAlchemy engine configured for the detected database type

    Raises
    ------
        ValueError
            If database URL is unsupported or missing
    """
    db_url = db_url or get_settings().database_url

    if not db_url:
        raise ValueError("DATABASE_URL is required but not configured")

    engine_kwargs: dict = {"echo": False}

    if db_url.startswith("sqlite"):
        logger.info("📊 Database: SQLite")
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in db_url:
            # All sessions must share the single in-memory connection
            engine_kwargs["poolclass"] = StaticPool

    elif db_url.startswith("postgresql") or db_url.startswith("mysql"):
        logger.info("📊 Database: %s (connection pooling enabled)", db_url.split(":")[0])
        engine_kwargs.update({
            "pool_pre_ping": True,
            "pool_size": 10,
            "max_overflow": 20,
            "pool_recycle": 3600,
        })
        if db_url.startswith("mysql") and "charset" not in db_url:
            engine_kwargs["connect_args"] = {"charset": "utf8mb4"}

    else:
        raise ValueError(f"Unsupported database URL: {db_url}")

    engine = create_engine(db_url, **engine_kwargs)

    # SQLite: enable foreign keys (disabled by default) and WAL for concurrent issuance
    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in db_url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    logger.info(f"✅ Database engine created: {db_url.split('@')[-1] if '@' in db_url else db_url.split(':')[0]}")
    return engine


def get_engine() -> Engine:
    """Get or create the database engine (cached after first call)."""
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def get_session_local() -> sessionmaker:
    """Get or create the session factory (cached after first call)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


def init_db() -> None:
    """Initialize the database, creating all tables."""
    logger.info("Initializing database tables...")
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables initialized")


def get_db() -> Generator[Session, None, None]:
    """Get a database session.

    Yields:
        Database session that is automatically closed after use
    """
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
