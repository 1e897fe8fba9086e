"""
Database engine and session management.

The position store is written by both the reconciliation cycle and the price
monitor, so SQLite connections run in WAL mode with a busy timeout. Any other
SQLAlchemy URL (e.g. PostgreSQL) gets a pre-pinged connection pool.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

SQLITE_BUSY_TIMEOUT_MS = 5000


def _sqlite_engine(database_url: str, database: str | None, echo: bool) -> Engine:
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _configure(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    return engine


class Database:
    """Engine plus session factory for the position and history tables."""

    def __init__(self, database_url: str, *, echo: bool = False):
        self.database_url = database_url
        url = make_url(database_url)
        self.backend = url.get_backend_name()

        if self.backend == "sqlite":
            self.engine = _sqlite_engine(database_url, url.database, echo)
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=5,
                pool_recycle=1800,
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("DATABASE_INIT", backend=self.backend, database=url.database)

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    def create_all(self) -> None:
        """Create missing tables."""
        # Registers the ORM models on Base.metadata
        import position_ladder.storage.repository  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Session scope: commit on success, roll back and re-raise on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str) -> Database:
    """Open the database and make sure the schema exists."""
    db = Database(database_url)
    db.create_all()
    return db
