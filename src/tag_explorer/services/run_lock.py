"""Run-level mutual exclusion through a single ``run_locks`` row.

The lock row is written in its own short transaction so other processes see
it immediately. A holder refreshes ``heartbeat_at`` as it makes progress; a
row whose heartbeat is older than the timeout is treated as abandoned (for
instance a crashed process) and may be taken over.
"""

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from tag_explorer.config import settings
from tag_explorer.db import Database
from tag_explorer.exceptions import RunInProgress
from tag_explorer.models.run_lock import RunLock

logger = logging.getLogger(__name__)

REFRESH_LOCK = "refresh"


def _owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RunLockHandle:
    """Acquire on enter, release on exit (success, failure or exception)."""

    def __init__(self, db: Database, name: str = REFRESH_LOCK, timeout_seconds: int = None):
        self.db = db
        self.name = name
        self.timeout = timedelta(seconds=timeout_seconds or settings.run_lock_timeout_seconds)
        self.owner = _owner_id()
        self.held = False

    def acquire(self):
        now = datetime.utcnow()
        try:
            with self.db.transaction() as session:
                current = session.get(RunLock, self.name)
                if current is not None:
                    if current.heartbeat_at and now - current.heartbeat_at < self.timeout:
                        raise RunInProgress(
                            f"Run lock '{self.name}' held by {current.owner} since {current.acquired_at:%Y-%m-%d %H:%M:%S}"
                        )
                    logger.warning(f"Taking over stale run lock from {current.owner}")
                    session.delete(current)
                    session.flush()
                session.add(RunLock(name=self.name, owner=self.owner, acquired_at=now, heartbeat_at=now))
        except IntegrityError as e:
            # Another process inserted the row between our read and write
            raise RunInProgress(f"Run lock '{self.name}' was taken concurrently") from e
        except OperationalError as e:
            # SQLite: a live run holds the write lock, so its lock row only looks stale
            raise RunInProgress(f"Run lock '{self.name}' is held by a run that is still writing") from e
        self.held = True
        logger.debug(f"Acquired run lock '{self.name}' as {self.owner}")

    def heartbeat(self):
        if not self.held:
            return
        if self.db.dialect == "sqlite":
            # The run's own transaction holds the write lock; acquire() maps the
            # resulting busy error to RunInProgress
            return
        with self.db.transaction() as session:
            session.execute(
                update(RunLock)
                .where(RunLock.name == self.name, RunLock.owner == self.owner)
                .values(heartbeat_at=datetime.utcnow())
            )

    def release(self):
        if not self.held:
            return
        try:
            with self.db.transaction() as session:
                session.execute(delete(RunLock).where(RunLock.name == self.name, RunLock.owner == self.owner))
        finally:
            self.held = False
        logger.debug(f"Released run lock '{self.name}'")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def current_lock(db: Database, name: str = REFRESH_LOCK) -> RunLock | None:
    with db.reader() as session:
        return session.scalar(select(RunLock).where(RunLock.name == name))
