"""SQLAlchemy engine and session management.

A ``Database`` is built once by the entry point (CLI, scheduler, WSGI app),
handed to whatever needs it, and disposed on shutdown. Nothing here opens a
connection at import time.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, url: str, echo: bool = False, busy_timeout: float = None):
        self.url = url
        kwargs = {"echo": echo}
        if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
            # One shared connection so every session sees the same in-memory DB
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool
        elif url.startswith("sqlite") and busy_timeout is not None:
            kwargs["connect_args"] = {"timeout": busy_timeout}
        self.engine = create_engine(url, **kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _sqlite_connect)
            event.listen(self.engine, "begin", _sqlite_begin)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(settings.db_url, echo=settings.db_echo, busy_timeout=settings.db_busy_timeout)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session inside one transaction; commit on success, roll back on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """Yield a session for read-only work. Nothing is committed.

        Closing releases the connection (and its transaction) without expiring
        loaded objects, so results stay readable after the block.
        """
        session = self.get_session()
        try:
            yield session
        finally:
            session.close()

    def init_db(self):
        """Create all tables."""
        from tag_explorer.models import stock, tag, update_stat, run_lock  # noqa: F401
        Base.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()
        logger.debug("Database engine disposed")


@contextmanager
def open_database(settings) -> Iterator[Database]:
    """Scoped database handle for CLI commands and scripts."""
    db = Database.from_settings(settings)
    db.init_db()
    try:
        yield db
    finally:
        db.dispose()


def insert_ignore(session: Session, model, rows: list[dict]) -> int:
    """Bulk insert rows, silently skipping ones that violate a unique constraint.

    Returns the number of rows actually inserted where the driver reports it.
    """
    if not rows:
        return 0
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
        stmt = dialect_insert(model).values(rows).on_conflict_do_nothing()
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
        stmt = dialect_insert(model).values(rows).on_conflict_do_nothing()
    elif dialect in ("mysql", "mariadb"):
        stmt = insert(model).values(rows).prefix_with("IGNORE")
    else:
        raise NotImplementedError(f"insert_ignore is not supported for dialect {dialect!r}")
    result = session.execute(stmt)
    return max(result.rowcount or 0, 0)


def _sqlite_connect(dbapi_connection, connection_record):
    # Turn off pysqlite's implicit BEGIN so SAVEPOINTs nest inside our transaction
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")
