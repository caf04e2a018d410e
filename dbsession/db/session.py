import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional, TypeVar

from sqlalchemy import create_engine, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Determine database-specific connection arguments
def get_connect_args(database_url: str) -> Dict[str, Any]:
    """Get database-specific connection arguments"""
    if database_url.startswith("sqlite"):
        # Sessions are shared across worker threads; wait for writers instead of failing fast
        return {"check_same_thread": False, "timeout": 30}
    # PostgreSQL and other databases don't need special args
    return {}


def ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database"""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    Path(url.database).resolve().parent.mkdir(parents=True, exist_ok=True)


def create_db_engine(database_url: str, **kwargs: Any) -> Engine:
    """Create database engine with appropriate connection args"""
    ensure_sqlite_directory(database_url)
    return create_engine(
        database_url,
        connect_args=get_connect_args(database_url),
        **kwargs,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create session factory bound to the given engine"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_sync(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Get a synchronous DB session with proper resource management"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


class TransactionRunner:
    """Runs a unit of work in its own transaction.

    The unit of work receives the open Session and may call ``db.flush()``
    to force pending writes to the database before the commit. Any exception
    rolls the transaction back and propagates to the caller.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def for_engine(cls, engine: Engine) -> "TransactionRunner":
        return cls(create_session_factory(engine))

    @property
    def engine(self) -> Optional[Engine]:
        return self.session_factory.kw.get("bind")

    def run(self, unit_of_work: Callable[[Session], T]) -> T:
        with get_db_sync(self.session_factory) as db:
            try:
                result = unit_of_work(db)
                db.commit()
                return result
            except Exception:
                db.rollback()
                raise
