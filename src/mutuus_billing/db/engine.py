"""
Database engine and session management
"""
import logging
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(config) -> Engine:
    """
    Create the SQLAlchemy engine for the configured DATABASE_URL

    PostgreSQL gets production pool settings; SQLite (local runs and tests)
    gets a single shared connection.
    """
    url = config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is required but not set")

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_foreign_keys(engine)
        logger.info("SQLite engine configured")
        return engine

    engine = create_engine(
        url,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_recycle=config.DB_POOL_RECYCLE,
        pool_timeout=config.DB_POOL_TIMEOUT,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 60,
            "keepalives_interval": 10,
            "keepalives_count": 3,
            "application_name": "mutuus_billing",
            "options": (
                f"-c statement_timeout={config.DB_STATEMENT_TIMEOUT} "
                f"-c idle_in_transaction_session_timeout=20000"
            ),
        }
    )

    logger.info("PostgreSQL engine configured:")
    logger.info(f"  - Pool size: {config.DB_POOL_SIZE}")
    logger.info(f"  - Max overflow: {config.DB_MAX_OVERFLOW}")
    logger.info(f"  - Pool timeout: {config.DB_POOL_TIMEOUT}s")
    logger.info(f"  - Statement timeout: {config.DB_STATEMENT_TIMEOUT}ms")
    return engine


def _enable_sqlite_foreign_keys(engine: Engine):
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# Bound by the application factory on startup
SessionLocal: Optional[SessionFactory] = None


def configure_sessions(engine: Optional[Engine] = None, session_factory: Optional[SessionFactory] = None) -> SessionFactory:
    """Bind the module-level session factory used by ``get_db``"""
    global SessionLocal
    if session_factory is None:
        if engine is None:
            raise ValueError("configure_sessions() needs an engine or a session factory")
        session_factory = create_session_factory(engine)
    SessionLocal = session_factory
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get database session with proper error handling and connection management.
    Use as FastAPI dependency: db: Session = Depends(get_db)
    """
    if SessionLocal is None:
        raise RuntimeError("Database sessions are not configured; call configure_sessions() first")

    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
