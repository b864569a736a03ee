"""Database connection and session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from affiliates.errors import StorageUnavailable
from affiliates.logging_config import get_logger
from affiliates.tables import Base

logger = get_logger(__name__)


class Database:
    """Owns the engine and hands out transactional sessions.

    Constructed by the process and passed to each component; nothing here is
    a module-level singleton. Call ``open()`` before use and ``close()`` on
    shutdown.
    """

    def __init__(self, database_url: str, timeout_seconds: float = 5.0, echo: bool = False):
        self.database_url = database_url
        self.timeout_seconds = timeout_seconds
        self.echo = echo
        self.engine: Engine | None = None
        self.SessionLocal: sessionmaker | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def open(self) -> "Database":
        if self.engine is not None:
            return self

        self.engine = create_engine(self.database_url, echo=self.echo, **self._engine_options())
        if self.is_sqlite:
            _serialize_sqlite_transactions(self.engine)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info("database_opened", url=self.engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self.SessionLocal = None
        logger.info("database_closed")

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _engine_options(self) -> dict:
        if self.is_sqlite:
            options = {
                "connect_args": {"timeout": self.timeout_seconds, "check_same_thread": False},
            }
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                options["poolclass"] = StaticPool
            return options

        return {
            "connect_args": {"connect_timeout": max(1, int(self.timeout_seconds))},
            "pool_timeout": self.timeout_seconds,
            "pool_pre_ping": True,
        }

    def create_tables(self) -> None:
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self._require_engine())
        logger.info("tables_created")

    def drop_tables(self) -> None:
        """Drop all tables from the database."""
        Base.metadata.drop_all(bind=self._require_engine())
        logger.warning("tables_dropped")

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise RuntimeError("Database is not open")
        return self.engine

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Everything done with the yielded session commits together or not at
        all. Connection failures and timeouts surface as StorageUnavailable.

        Yields:
            Database session
        """
        self._require_engine()
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            logger.warning("storage_unavailable", error=str(exc))
            raise StorageUnavailable("Store unavailable, retry later") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _serialize_sqlite_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two read-then-write
    # units of work interleave. BEGIN IMMEDIATE takes the write lock up front.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def storage_retry(attempts: int) -> Retrying:
    """Retry policy for idempotent or atomic operations hitting StorageUnavailable."""
    return Retrying(
        retry=retry_if_exception_type(StorageUnavailable),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
