"""
Tests for the historical listener average store.

All tests run against a private in-memory SQLite database.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from services.feed_monitor.errors import HistoryStoreError
from services.feed_monitor.history_store import (
    BUCKET_COLUMNS,
    HistoricalStore,
    ListenerAvg,
    bucket_for_hour,
)


NOW = datetime(2024, 1, 15, 13, 30, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store = HistoricalStore()
    yield store
    store.close()


@pytest.mark.parametrize(
    "hour,bucket",
    [
        (0, 0), (3, 0), (4, 1), (7, 1), (8, 2), (11, 2),
        (12, 3), (15, 3), (16, 4), (19, 4), (20, 5), (23, 5), (24, 0),
    ],
)
def test_bucket_for_hour(hour, bucket):
    assert bucket_for_hour(hour) == bucket


class TestListenerAvg:
    """Test the listener average row model."""

    def test_new_row_is_empty(self):
        record = ListenerAvg.new(42, NOW)

        assert record.id == 42
        assert record.last_seen == int(NOW.timestamp())
        assert record.buckets() == [None] * len(BUCKET_COLUMNS)
        assert record.is_valid()

    def test_set_hour_writes_one_bucket(self):
        record = ListenerAvg.new(42, NOW - timedelta(days=1))
        record.set_hour(13, 250, NOW)

        assert record.utc_12 == 250
        assert record.for_hour(14) == 250
        assert record.for_hour(2) is None
        assert record.last_seen == int(NOW.timestamp())

    def test_negative_bucket_is_invalid(self):
        record = ListenerAvg.new(42, NOW)
        record.utc_4 = -1

        assert not record.is_valid()


class TestHistoricalStore:
    """Test cases for HistoricalStore."""

    def test_seed_falls_back_without_row(self, store):
        with store.transaction() as session:
            assert store.seed(session, 13, 42, 75) == 75

    def test_record_and_seed(self, store):
        with store.transaction() as session:
            store.record_baseline(session, 42, 13, 120, NOW)

        with store.transaction() as session:
            assert store.seed(session, 13, 42, 75) == 120
            # Other buckets are still empty
            assert store.seed(session, 1, 42, 75) == 75

        assert store.count() == 1

    def test_buckets_persist_across_updates(self, store):
        with store.transaction() as session:
            store.record_baseline(session, 42, 1, 30, NOW)
        with store.transaction() as session:
            store.record_baseline(session, 42, 13, 120, NOW)

        with store.transaction() as session:
            record = store.load(session, 42)
            assert record.utc_0 == 30
            assert record.utc_12 == 120

    def test_overwrites_bucket(self, store):
        with store.transaction() as session:
            store.record_baseline(session, 42, 13, 120, NOW)
        with store.transaction() as session:
            store.record_baseline(session, 42, 14, 90, NOW)

        with store.transaction() as session:
            assert store.seed(session, 12, 42, 0) == 90

    def test_prune_by_age(self, store):
        with store.transaction() as session:
            store.record_baseline(session, 1, 13, 100, NOW - timedelta(days=31))
            store.record_baseline(session, 2, 13, 100, NOW - timedelta(days=29))

        deleted = store.prune(timedelta(days=30), NOW)

        assert deleted == 1
        with store.transaction() as session:
            assert store.load(session, 1) is None
            assert store.load(session, 2) is not None

    def test_malformed_row_skipped(self, store):
        """Rows with unusable data cold-start the feed and are overwritten."""
        with store.engine.begin() as conn:
            conn.execute(text(
                "INSERT INTO listener_avgs (id, last_seen, utc_12) VALUES (7, 1700000000, -5)"
            ))
            conn.execute(text(
                "INSERT INTO listener_avgs (id, last_seen, utc_12) VALUES (8, 'yesterday', 10)"
            ))

        with store.transaction() as session:
            assert store.load(session, 7) is None
            assert store.seed(session, 13, 7, 60) == 60
            assert store.seed(session, 13, 8, 60) == 60

        with store.transaction() as session:
            store.record_baseline(session, 7, 13, 60, NOW)

        with store.transaction() as session:
            record = store.load(session, 7)
            assert record is not None
            assert record.utc_12 == 60

    def test_failed_transaction_rolls_back(self, store):
        with pytest.raises(HistoryStoreError, match="transaction failed"):
            with store.transaction() as session:
                store.record_baseline(session, 42, 13, 120, NOW)
                session.execute(text("SELECT * FROM missing_table"))

        assert store.count() == 0

    def test_other_errors_roll_back_and_propagate(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                store.record_baseline(session, 42, 13, 120, NOW)
                raise RuntimeError("boom")

        assert store.count() == 0

    def test_optimize(self, store):
        store.optimize()

    def test_from_path_creates_directory(self, tmp_path):
        path = tmp_path / "nested" / "listener_avgs.sqlite"

        store = HistoricalStore.from_path(path)
        try:
            with store.transaction() as session:
                store.record_baseline(session, 1, 0, 10, NOW)
        finally:
            store.close()

        assert path.exists()
