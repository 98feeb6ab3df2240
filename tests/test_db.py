"""Tests for the storage handle, using a stub psycopg2 connection."""

from decimal import Decimal

import psycopg2
import pytest

import db
import queries
from classifier import ActivityRecord, ActivityType
from conftest import DELEGATE, DELEGATOR, STRANGER, TS
from config import ZERO_ADDRESS
from errors import StorageUnavailable


class StubCursor:

    def __init__(self, results=None, fail_on=None, closes_connection=False):
        self.results = list(results or [])
        self.fail_on = fail_on
        self.closes_connection = closes_connection
        self.connection = None
        self.executed = []
        self.closed = False
        self._last = None

    def execute(self, query, params=None):
        if self.fail_on and self.fail_on in query:
            if self.closes_connection:
                # psycopg2 flags the connection as broken when the server drops it
                self.connection.closed = 2
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        self.executed.append((query, params))
        self._last = self.results.pop(0) if self.results else []

    def fetchall(self):
        return self._last

    def fetchone(self):
        return self._last[0] if self._last else None

    def close(self):
        self.closed = True


class StubConnection:

    def __init__(self, cursor, rollback_error=None):
        self._cursor = cursor
        self._cursor.connection = self
        self.rollback_error = rollback_error
        self.autocommit = False
        self.committed = False
        self.rolled_back = False
        self.closed = 0

    def cursor(self, cursor_factory=None):
        return self._cursor

    def commit(self):
        self.committed = True

    def rollback(self):
        if self.rollback_error:
            raise self.rollback_error
        self.rolled_back = True

    def close(self):
        self.closed = 1


def make_storage(cursor, **kwargs):
    conn = StubConnection(cursor, **kwargs)
    return db.Storage("dbname=test", connect=lambda dsn: conn), conn


class TestCursor:

    def test_commit_on_success(self):
        storage, conn = make_storage(StubCursor([[{"delegated_tokens": Decimal("5")}]]))

        rows = storage.fetch_all(queries.SELECT_DELEGATED_TOKEN_COUNT)

        assert rows == [{"delegated_tokens": 5}]
        assert isinstance(rows[0]["delegated_tokens"], int)
        assert conn.committed and conn.closed and not conn.rolled_back

    def test_connect_failure_is_retriable(self):
        def refuse(dsn):
            raise psycopg2.OperationalError("could not connect to server")

        storage = db.Storage("dbname=test", connect=refuse)

        with pytest.raises(StorageUnavailable) as info:
            storage.fetch_all(queries.SELECT_UPDATED_AT)
        assert info.value.retriable

    def test_dropped_connection_rolls_back(self):
        cursor = StubCursor(fail_on="top_1000_holders")
        storage, conn = make_storage(cursor)

        with pytest.raises(StorageUnavailable):
            storage.fetch_all(queries.SELECT_TOP_HOLDERS, {"since": 0})
        assert conn.rolled_back and not conn.committed
        assert cursor.closed and conn.closed

    @pytest.mark.parametrize("closes_connection", [True, False])
    def test_failed_rollback_still_reported(self, closes_connection):
        cursor = StubCursor(fail_on="top_1000_holders", closes_connection=closes_connection)
        storage, conn = make_storage(
            cursor, rollback_error=psycopg2.InterfaceError("connection already closed"),
        )

        with pytest.raises(StorageUnavailable) as info:
            storage.fetch_all(queries.SELECT_TOP_HOLDERS, {"since": 0})
        assert isinstance(info.value.__cause__, psycopg2.OperationalError)
        assert not conn.committed and conn.closed

    def test_other_errors_propagate(self):
        storage, conn = make_storage(StubCursor())

        with pytest.raises(KeyError):
            with storage.cursor():
                raise KeyError("boom")
        assert conn.rolled_back


class TestActivityInputs:

    def test_rows_become_classifier_inputs(self):
        cursor = StubCursor([
            [],  # SET TRANSACTION
            [{
                "delegate_address": DELEGATE.upper().replace("0X", "0x"),
                "block_number": 100,
                "log_index": 7,
                "block_timestamp": TS,
                "voting_power": Decimal("1500"),
                "previous_power": Decimal("1000"),
            }],
            [{
                "block_number": 100,
                "log_index": 2,
                "block_timestamp": TS,
                "delegator_address": DELEGATOR,
                "from_delegate": ZERO_ADDRESS,
                "to_delegate": DELEGATE,
            }],
            [{"block_number": 100, "log_index": 6, "from_address": DELEGATOR, "to_address": STRANGER}],
            [{"delegator": DELEGATOR, "delegate": DELEGATE}],
        ])
        storage, _ = make_storage(cursor)

        samples, events, transfers, delegations = storage.fetch_activity_inputs(since=TS - 10, threshold=1)

        assert samples[0].delegate_address == DELEGATE
        assert samples[0].voting_power_change == 500
        assert events[0].to_delegate == DELEGATE
        assert transfers[0].from_address == DELEGATOR
        assert delegations == {DELEGATOR: DELEGATE}
        assert cursor.executed[1] == (queries.SELECT_POWER_CHANGES, {"since": TS - 10, "threshold": 1})
        assert cursor.executed[4] == (queries.SELECT_CURRENT_DELEGATIONS, {"delegates": [DELEGATE]})

    def test_no_delegation_lookup_without_samples(self):
        cursor = StubCursor([[], [], [], []])
        storage, _ = make_storage(cursor)

        assert storage.fetch_activity_inputs(since=0, threshold=1) == ([], [], [], {})
        assert len(cursor.executed) == 4


class TestRecentActivityCache:

    def record(self):
        return ActivityRecord(
            activity_type=ActivityType.TOKENS_SENT,
            amount=300,
            block_number=230,
            log_index=3,
            block_timestamp=TS,
            delegator_address=DELEGATOR,
            delegate_address=DELEGATE,
        )

    @pytest.mark.parametrize("acquired", [True, False])
    def test_refresh_lock_held_on_own_session(self, acquired):
        cursor = StubCursor([[(acquired,)]])
        storage, conn = make_storage(cursor)

        with storage.refresh_lock() as got:
            assert got is acquired
            assert conn.autocommit and not conn.closed
        assert cursor.executed == [(queries.TRY_REFRESH_LOCK, (queries.RECENT_ACTIVITY_LOCK_ID,))]
        assert conn.closed

    def test_refresh_lock_released_on_error(self):
        storage, conn = make_storage(StubCursor([[(True,)]]))

        with pytest.raises(RuntimeError):
            with storage.refresh_lock():
                raise RuntimeError("classifier failed")
        assert conn.closed

    def test_refresh_lock_connection_lost(self):
        storage, _ = make_storage(StubCursor(fail_on="pg_try_advisory_lock"))

        with pytest.raises(StorageUnavailable):
            with storage.refresh_lock():
                pass

    def test_lock_is_session_level(self):
        assert "pg_try_advisory_lock(" in queries.TRY_REFRESH_LOCK

    def test_swaps_in_one_transaction(self, monkeypatch):
        inserted = []
        monkeypatch.setattr(db, "execute_values", lambda cur, sql, rows, page_size: inserted.extend(rows))
        cursor = StubCursor([[], [("2024-08-01",)]])
        storage, conn = make_storage(cursor)

        refreshed_at = storage.replace_recent_activity([self.record()], 1, 30)

        assert refreshed_at == "2024-08-01"
        assert [q for q, _ in cursor.executed] == [
            queries.DELETE_RECENT_ACTIVITY,
            queries.UPSERT_RECENT_ACTIVITY_META,
        ]
        assert inserted == [(230, 3, TS, "tokens_sent", DELEGATOR, 300, None, None, DELEGATE)]
        assert conn.committed
