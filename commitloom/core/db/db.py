"""Database connection and session management."""

import logging
import threading
from contextlib import contextmanager, nullcontext
from typing import Iterator, Optional

import backoff
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless this is set per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Own the SQLAlchemy engine and hand out transactional sessions.

    Usage:
        db = DatabaseManager("postgresql://...")
        with db.get_session() as session:
            session.add(obj)
        # committed here, rolled back on exception
    """

    def __init__(self, database_url: str, echo: bool = False, pool_size: int = 5):
        self.database_url = database_url

        if database_url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across sessions
            self.engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
            # Sessions share that connection, so serialize them across threads
            self._session_lock = threading.RLock()
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                pool_pre_ping=True,
            )
            self._session_lock = None

        self._session_factory = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        logger.info(f"DatabaseManager initialized ({self.dialect})")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Yield a session; commit on success, roll back on error."""
        with self._session_lock or nullcontext():
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def create_tables(self):
        """Create all tables (development and tests; production uses alembic)."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self):
        Base.metadata.drop_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self):
        self.engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def get_database_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """Return the process-wide DatabaseManager, creating it on first use."""
    global _db_manager
    if _db_manager is None:
        if database_url is None:
            from ...setting import get_settings
            db_settings = get_settings().database
            _db_manager = DatabaseManager(
                db_settings.url, echo=db_settings.echo, pool_size=db_settings.pool_size
            )
        else:
            _db_manager = DatabaseManager(database_url)
    return _db_manager


def wait_for_db(db_manager: DatabaseManager, max_tries: int = 10, max_time: float = 60.0) -> bool:
    """Block until the database answers, retrying with exponential backoff."""

    @backoff.on_exception(
        backoff.expo,
        OperationalError,
        max_tries=max_tries,
        max_time=max_time,
        on_backoff=lambda details: logger.warning(
            f"Database not ready (attempt {details['tries']}/{max_tries}), "
            f"retrying in {details['wait']:.1f}s: {details.get('exception')}"
        ),
    )
    def _ping() -> bool:
        return db_manager.ping()

    try:
        _ping()
    except OperationalError as e:
        logger.error(f"Database unavailable after {max_tries} attempts: {e}")
        return False
    logger.info("Database is available")
    return True
