import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session

from config import Settings, get_settings
from errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def make_engine(settings: Settings):
    url = settings.database_url
    if url.startswith("sqlite"):
        # timeout is the sqlite busy timeout: how long a writer waits for a lock
        connect_args = {"check_same_thread": False, "timeout": settings.store_timeout_seconds}
        engine = create_engine(url, connect_args=connect_args)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_timeout=settings.store_timeout_seconds,
        )
    return engine


# retryable failures: sqlite lock messages and the matching postgres SQLSTATEs
CONTENTION_MARKERS = ("is locked", "database is busy", "deadlock", "could not serialize",
                      "lock timeout", "lock not available")
CONTENTION_CODES = {"40001", "40P01", "55P03"}


def is_contention(exc: BaseException) -> bool:
    """True when a store error means "try again later" rather than a broken query."""
    if isinstance(exc, PoolTimeoutError):
        return True
    if not isinstance(exc, OperationalError):
        return False
    if exc.connection_invalidated:
        return True
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in CONTENTION_CODES:
        return True
    text = str(orig).lower()
    return any(marker in text for marker in CONTENTION_MARKERS)


class Store:
    """Engine, session factory and the retrying unit of work."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.engine = make_engine(self.settings)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self):
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()

    def _retrying(self, work: Callable[[Session], T], commit: bool) -> T:
        attempts = max(1, self.settings.store_retry_attempts)
        for attempt in range(1, attempts + 1):
            db = self.SessionLocal()
            try:
                result = work(db)
                if commit:
                    db.commit()
                return result
            except (OperationalError, PoolTimeoutError) as exc:
                db.rollback()
                if not is_contention(exc):
                    raise
                logger.warning("store contention (attempt %d/%d): %s", attempt, attempts, exc)
                if attempt == attempts:
                    raise TransientStoreError("store busy, retry later") from exc
                time.sleep(self.settings.store_retry_backoff * attempt)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        raise TransientStoreError("store busy, retry later")

    def run(self, work: Callable[[Session], T]) -> T:
        """Run ``work`` in one transaction and commit it.

        Lock contention is retried with linear backoff up to
        ``store_retry_attempts``, then surfaces as ``TransientStoreError``.
        Business errors and other store errors propagate after rollback.
        """
        return self._retrying(work, commit=True)

    def read(self, work: Callable[[Session], T]) -> T:
        return self._retrying(work, commit=False)
