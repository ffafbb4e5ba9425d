"""Engine and session management."""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .schema import Base

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class Database:
    """
    Owns the engine and hands out sessions.

    Usage:
        db = Database("sqlite:///model-library.db")
        db.create_all()
        with db.transaction() as session:
            session.add(org)
    """

    def __init__(self, url: str, echo: bool = False):
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(url):
                # One shared connection, otherwise each session sees an empty database.
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self.url = url
        self.engine: Engine = create_engine(url, **kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    def session(self) -> Session:
        return self._sessionmaker()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any exception."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
