"""SQLAlchemy engine, session factory and transaction helpers."""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from vpn_billing.errors import ConstraintViolationError, PersistenceError
from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)

Base = declarative_base()


class Database:
    """Relational store wrapper.

    Owns the engine and hands out sessions. Objects stay usable after commit
    (``expire_on_commit=False``) so services can return them to callers.
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions are used from the worker thread and the request thread pool
            connect_args["check_same_thread"] = False

        self.url = url
        self.engine = create_engine(
            url,
            echo=echo,
            future=True,
            pool_pre_ping=not url.startswith("sqlite"),
            connect_args=connect_args,
        )
        self._session_factory = sessionmaker(
            bind=self.engine, expire_on_commit=False, future=True
        )

    def create_all(self) -> None:
        """Create missing tables."""
        # Registers all mapped classes on Base.metadata
        import vpn_billing.models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("database_tables_ready", url=self.engine.url.render_as_string(hide_password=True))

    def drop_all(self) -> None:
        """Drop all tables. Used by tests."""
        Base.metadata.drop_all(self.engine)

    def session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def transaction(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Run a unit of work.

        When ``session`` is given the caller owns the transaction and this is
        a pass-through. Otherwise a new session is committed on success and
        rolled back on error. SQLAlchemy errors surface as PersistenceError.
        """
        if session is not None:
            yield session
            return

        new_session = self._session_factory()
        try:
            yield new_session
            new_session.commit()
        except IntegrityError as e:
            new_session.rollback()
            raise ConstraintViolationError(f"Constraint violated: {e.orig}") from e
        except SQLAlchemyError as e:
            new_session.rollback()
            raise PersistenceError(f"Database operation failed: {e}") from e
        except Exception:
            new_session.rollback()
            raise
        finally:
            new_session.close()

    def ping(self) -> bool:
        """Check database connectivity."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("database_ping_failed", error=str(e))
            return False

    def dispose(self) -> None:
        self.engine.dispose()


# Global database instance
_database_instance: Optional[Database] = None
_database_lock = threading.Lock()


def get_database() -> Database:
    """Get global database instance (singleton) built from configuration."""
    global _database_instance
    if _database_instance is None:
        with _database_lock:
            if _database_instance is None:
                from vpn_billing.config import get_config

                settings = get_config().database
                _database_instance = Database(settings.url, echo=settings.echo)
    return _database_instance


def reset_database() -> None:
    """Dispose and forget the global database instance."""
    global _database_instance
    with _database_lock:
        if _database_instance is not None:
            _database_instance.dispose()
        _database_instance = None
