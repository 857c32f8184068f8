"""
Database Connection Management for the KYC Screening Engine

Sessions are handed out two ways:
- session_scope(): commit on exit, rollback on error. Used by API reads
  and by repository-level writes that need no intermediate commit.
- get_unit_of_work(): the caller commits explicitly. Used by screening
  attempts, which commit the ScreeningRecord before classifying, and by
  the background audit writer.

Engine creation and health checks retry on OperationalError via tenacity.
Settings come from config.yaml with environment overrides; DATABASE_URL
replaces the assembled PostgreSQL URL entirely (SQLite in tests).
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Connection and pool settings for the screening database."""
    host: str = "localhost"
    port: int = 5432
    database: str = "kyc_database"
    user: str = "kyc_user"
    password: str = "kyc_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "kyc_database"),
            user=os.getenv("DB_USER", "kyc_user"),
            password=os.getenv("DB_PASSWORD", "kyc_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    @classmethod
    def from_config(cls, db_config) -> 'DatabaseSettings':
        """Create settings from the config.yaml database section; env vars take precedence."""
        settings = cls.from_env()
        settings.host = os.getenv("DB_HOST", db_config.host)
        settings.port = int(os.getenv("DB_PORT", str(db_config.port)))
        settings.database = os.getenv("DB_NAME", db_config.name)
        settings.user = os.getenv("DB_USER", db_config.user)
        settings.password = os.getenv("DB_PASSWORD", db_config.password)
        return settings

    def get_url(self) -> str:
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> dict:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Retry on OperationalError with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait between attempts (seconds)
        max_wait: Maximum wait between attempts (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# UNIT OF WORK
# ============================================

class UnitOfWork:
    """
    One session with caller-controlled commits.

    Each screening attempt and each background audit write runs in its
    own unit; no unit spans more than one entity. Leaving the block
    without commit() discards pending changes.

    Usage:
        with db_provider.get_unit_of_work() as uow:
            record = ScreeningRepository(uow.session).create(...)
            uow.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and session factory shared by the API, the screening
    orchestrator, the escalation engine and the audit writer thread.

    Usage:
        db_provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
        db_provider.init()

        with db_provider.session_scope() as session:
            cases, total = CaseRepository(session).list_cases(status=CaseStatus.OPEN)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Database settings (environment if not provided)
            engine: Pre-created engine (SQLite in tests)
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Create the engine (unless one was given) and the session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        # expire_on_commit=False: screening attempts read entity fields
        # after the intermediate commit of the ScreeningRecord
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=self._settings.echo,
                connect_args={"check_same_thread": False}
            )
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **self._settings.pool_options()
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

        @event.listens_for(self._engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            logger.debug("Connection checked out from pool")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self.init()
        return self._session_factory

    def get_unit_of_work(self) -> UnitOfWork:
        """Unit of work whose changes persist only on uow.commit()."""
        return UnitOfWork(self.session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on exit and rolls back on exception."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables from the ORM metadata (SQLite and development)."""
        if self._engine is None or not self._initialized:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """Drop all tables. USE WITH CAUTION!"""
        if self._engine is None or not self._initialized:
            self.init()
        Base.metadata.drop_all(self._engine)
        logger.warning("Database tables dropped")

    @db_retry
    def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Provider for tests, usually around a file-backed SQLite engine.

    Call init() and create_tables() before use.
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)
