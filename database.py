import logging
import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings

logger = logging.getLogger(__name__)


def _create_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # One shared connection, otherwise every checkout sees an empty db.
        kwargs["poolclass"] = StaticPool

    eng = create_engine(database_url, connect_args=connect_args, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


class Base(DeclarativeBase):
    pass


class Store:
    """In-memory repository shared by all requests.

    Every unit of work runs under one process lock, so a reader never observes
    a half-applied series split or bulk load.
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        import models  # noqa: F401  registers the tables on Base.metadata

        self.database_url = database_url or get_settings().database_url
        self.engine = _create_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        self._lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with self._lock:
            session: Session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def reset(self) -> None:
        with self._lock:
            Base.metadata.drop_all(self.engine)
            Base.metadata.create_all(self.engine)
            logger.info(f"store_reset: url={self.database_url}")


@lru_cache(maxsize=1)
def get_store() -> Store:
    return Store()
