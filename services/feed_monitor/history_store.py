"""Historical listener averages stored per feed in six 4-hour UTC buckets.

Each feed has one row holding the baseline observed in each time-of-day
window. The bucket for the current hour seeds a feed's average after a
restart so detection does not start from zero.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

import structlog
from sqlalchemy import BigInteger, Column, Integer, create_engine, delete, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import HistoryStoreError


logger = structlog.get_logger(__name__)

Base = declarative_base()

BUCKET_COLUMNS = ("utc_0", "utc_4", "utc_8", "utc_12", "utc_16", "utc_20")
DEFAULT_RETENTION = timedelta(days=30)


def bucket_for_hour(hour: int) -> int:
    """Return the index of the 4-hour bucket containing ``hour``."""
    if hour < 4 or hour > 23:
        return 0
    if hour < 8:
        return 1
    if hour < 12:
        return 2
    if hour < 16:
        return 3
    if hour < 20:
        return 4
    return 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListenerAvg(Base):
    __tablename__ = "listener_avgs"

    id = Column(Integer, primary_key=True, autoincrement=False)
    last_seen = Column(BigInteger, nullable=False)
    utc_0 = Column(Integer, nullable=True)
    utc_4 = Column(Integer, nullable=True)
    utc_8 = Column(Integer, nullable=True)
    utc_12 = Column(Integer, nullable=True)
    utc_16 = Column(Integer, nullable=True)
    utc_20 = Column(Integer, nullable=True)

    @classmethod
    def new(cls, feed_id: int, now: Optional[datetime] = None) -> "ListenerAvg":
        now = now or _utcnow()
        # Buckets are set explicitly so a merge over a malformed row clears it
        return cls(id=feed_id, last_seen=int(now.timestamp()), **{column: None for column in BUCKET_COLUMNS})

    def buckets(self) -> list:
        return [getattr(self, column) for column in BUCKET_COLUMNS]

    def for_hour(self, hour: int) -> Optional[int]:
        return getattr(self, BUCKET_COLUMNS[bucket_for_hour(hour)])

    def set_hour(self, hour: int, value: int, now: Optional[datetime] = None) -> None:
        """Overwrite the bucket containing ``hour`` and mark the feed as seen."""
        now = now or _utcnow()
        setattr(self, BUCKET_COLUMNS[bucket_for_hour(hour)], int(value))
        self.last_seen = int(now.timestamp())

    def is_valid(self) -> bool:
        """Check that a loaded row holds usable data."""
        if not isinstance(self.last_seen, int) or isinstance(self.last_seen, bool):
            return False
        for value in self.buckets():
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                return False
        return True

    def __repr__(self) -> str:
        return f"ListenerAvg(id={self.id}, last_seen={self.last_seen}, buckets={self.buckets()})"


class HistoricalStore:
    """
    SQLite-backed store of per-feed historical baselines.

    Attributes:
        engine: SQLAlchemy engine bound to the database
    """

    def __init__(self, url: str = "sqlite://") -> None:
        """
        Open the store and create the schema if needed.

        Args:
            url: SQLAlchemy database URL. ``sqlite://`` opens a private
                in-memory database.
        """
        if url in ("sqlite://", "sqlite:///:memory:"):
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                url,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
            )

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise HistoryStoreError(f"Failed to initialize listener average schema: {e}") from e

        logger.info("Historical store ready", url=self.engine.url.render_as_string(hide_password=True))

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "HistoricalStore":
        """Open a SQLite database file, creating its directory if needed."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise HistoryStoreError(f"Failed to create data directory {path.parent}: {e}") from e
        return cls(f"sqlite:///{path}")

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Yield a session whose writes commit together or not at all.

        Raises:
            HistoryStoreError: If the transaction fails; all writes are rolled back
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise HistoryStoreError(f"Listener average transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load(self, session: Session, feed_id: int) -> Optional[ListenerAvg]:
        """
        Fetch the row for a feed.

        Rows that fail validation are skipped so the feed cold-starts; the
        next save overwrites them.
        """
        record = session.get(ListenerAvg, feed_id)
        if record is None:
            return None

        if not record.is_valid():
            logger.warning("Skipping malformed listener average row", feed_id=feed_id, row=repr(record))
            session.expunge(record)
            return None

        return record

    def load_or_new(self, session: Session, feed_id: int, now: Optional[datetime] = None) -> ListenerAvg:
        record = self.load(session, feed_id)
        if record is None:
            record = ListenerAvg.new(feed_id, now)
        return record

    def seed(self, session: Session, hour: int, feed_id: int, fallback_listeners: int) -> int:
        """Return the stored baseline for ``hour`` or ``fallback_listeners``."""
        record = self.load(session, feed_id)
        if record is None:
            return fallback_listeners

        value = record.for_hour(hour)
        return fallback_listeners if value is None else value

    def save(self, session: Session, record: ListenerAvg) -> ListenerAvg:
        """Insert or replace a feed's row within the session's transaction."""
        return session.merge(record)

    def record_baseline(
        self,
        session: Session,
        feed_id: int,
        hour: int,
        value: int,
        now: Optional[datetime] = None,
    ) -> ListenerAvg:
        """Write ``value`` into the bucket for ``hour`` of a feed's row."""
        record = self.load_or_new(session, feed_id, now)
        record.set_hour(hour, value, now)
        return self.save(session, record)

    def prune(self, retention: timedelta = DEFAULT_RETENTION, now: Optional[datetime] = None) -> int:
        """
        Delete rows for feeds not seen within ``retention``.

        Returns:
            Number of rows deleted
        """
        now = now or _utcnow()
        cutoff = int((now - retention).timestamp())

        with self.transaction() as session:
            result = session.execute(delete(ListenerAvg).where(ListenerAvg.last_seen < cutoff))
            deleted = result.rowcount or 0

        logger.info("Pruned stale listener averages", deleted=deleted, cutoff=cutoff)
        return deleted

    def count(self) -> int:
        with self.transaction() as session:
            return session.query(ListenerAvg).count()

    def optimize(self) -> None:
        """Best-effort storage optimization run once at shutdown."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA optimize"))
        except SQLAlchemyError as e:
            logger.warning("Storage optimize failed", error=str(e))

    def close(self) -> None:
        self.engine.dispose()
