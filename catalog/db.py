import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from psycopg import errors as pg_errors
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import Settings
from .errors import QueryTimeout, StorageError

Base = declarative_base()

logger = logging.getLogger(__name__)


class BoundedSession:
    """Runs statements on one session under a single deadline.

    Before each statement the remaining time is pushed into the transaction as
    ``statement_timeout``, so every statement together stays inside the budget
    the operation started with.
    """

    def __init__(self, session: Session, deadline: float, clock=time.monotonic):
        self.session = session
        self.deadline = deadline
        self._clock = clock

    def remaining_ms(self) -> int:
        return int((self.deadline - self._clock()) * 1000)

    def execute(self, statement, *args, **kwargs):
        remaining = self.remaining_ms()
        if remaining < 1:
            raise QueryTimeout("operation exceeded its deadline")
        self.session.execute(select(func.set_config("statement_timeout", str(remaining), True)))
        return self.session.execute(statement, *args, **kwargs)


class Database:
    """Pool of reusable store connections shared by every repository call.

    Build one per process at startup, hand it to the repositories that need it
    and call :meth:`dispose` at shutdown. Each :meth:`session` checks out one
    connection, bounds the whole call, pool wait included, by one
    deadline and returns the connection to the pool on every exit path.
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 25,
        max_idle_seconds: int = 15 * 60,
        query_timeout_seconds: float = 3.0,
        engine: Engine | None = None,
    ):
        self.query_timeout_seconds = query_timeout_seconds
        self.engine = engine or create_engine(
            url,
            pool_size=pool_size,
            max_overflow=0,
            pool_recycle=max_idle_seconds,
            pool_pre_ping=True,
            pool_timeout=query_timeout_seconds,
        )
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_idle_seconds=settings.db_max_idle_seconds,
            query_timeout_seconds=settings.db_query_timeout_seconds,
        )

    @property
    def timeout_ms(self) -> int:
        return int(self.query_timeout_seconds * 1000)

    @contextmanager
    def session(self) -> Iterator[BoundedSession]:
        deadline = time.monotonic() + self.query_timeout_seconds
        try:
            session = self._sessions()
            try:
                # check out now so the wait for a connection counts against the deadline
                session.connection()
                yield BoundedSession(session, deadline)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        except PoolTimeoutError as exc:
            logger.warning("db.pool_timeout", extra={"timeout_s": self.query_timeout_seconds})
            raise QueryTimeout("timed out waiting for a database connection") from exc
        except OperationalError as exc:
            if isinstance(exc.orig, pg_errors.QueryCanceled):
                logger.warning("db.statement_timeout", extra={"timeout_ms": self.timeout_ms})
                raise QueryTimeout("statement exceeded its deadline") from exc
            raise StorageError(str(exc.orig or exc)) from exc
        except SQLAlchemyError as exc:
            raise StorageError(str(getattr(exc, "orig", None) or exc)) from exc

    def ping(self) -> None:
        with self.session() as session:
            session.execute(text("SELECT 1"))

    def create_all(self) -> None:
        from . import entities  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
