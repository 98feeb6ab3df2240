import logging
from contextlib import contextmanager
from decimal import Decimal

import psycopg2
from psycopg2.extras import DictCursor, execute_values

from classifier import DelegationChangeEvent, TransferEvent, VotingPowerSample
from config import CONNECTION_STRING
from errors import StorageUnavailable
import queries

logger = logging.getLogger(__name__)


def plain_value(value):
    # NUMERIC(78,0) comes back as Decimal
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    return value


def plain_row(row):
    return {key: plain_value(value) for key, value in dict(row).items()}


class Storage:
    """
    Handle on the indexer database. Build one per request or job and pass it
    to the functions that need it.
    """

    def __init__(self, connection_string=CONNECTION_STRING, connect=psycopg2.connect):
        self.connection_string = connection_string
        self._connect = connect

    #### CONTEXT ####
    @contextmanager
    def cursor(self, dict_cursor=True):
        try:
            conn = self._connect(self.connection_string)
        except psycopg2.OperationalError as e:
            raise StorageUnavailable(f"Could not connect to database: {e}") from e
        cur = None
        try:
            cur = conn.cursor(cursor_factory=DictCursor if dict_cursor else None)
            yield cur
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._rollback(conn)
            raise StorageUnavailable(f"Database connection lost: {e}") from e
        except Exception:
            self._rollback(conn)
            raise
        finally:
            if cur is not None:
                cur.close()
            conn.close()

    @staticmethod
    def _rollback(conn):
        # psycopg2 marks the connection closed once the server goes away
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.InterfaceError as e:
            logger.warning("Rollback skipped, connection already closed: %s", e)

    def fetch_all(self, query, params=None):
        with self.cursor() as cur:
            cur.execute(query, params)
            return [plain_row(row) for row in cur.fetchall()]

    #### ACTIVITY INPUTS ####
    def fetch_activity_inputs(self, since, threshold):
        """
        Read everything the classifier needs in one transaction so samples,
        events and delegations come from the same snapshot.
        """
        params = {"since": since, "threshold": threshold}
        with self.cursor() as cur:
            cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ;")

            cur.execute(queries.SELECT_POWER_CHANGES, params)
            samples = [
                VotingPowerSample(
                    delegate_address=row["delegate_address"],
                    block_number=row["block_number"],
                    log_index=row["log_index"],
                    block_timestamp=row["block_timestamp"],
                    voting_power=int(row["voting_power"]),
                    previous_power=int(row["previous_power"]),
                )
                for row in cur.fetchall()
            ]

            cur.execute(queries.SELECT_DELEGATION_EVENTS, params)
            delegation_events = [DelegationChangeEvent(**dict(row)) for row in cur.fetchall()]

            cur.execute(queries.SELECT_TRANSFER_EVENTS, params)
            transfers = [TransferEvent(**dict(row)) for row in cur.fetchall()]

            delegates = sorted({sample.delegate_address for sample in samples})
            delegations = {}
            if delegates:
                cur.execute(queries.SELECT_CURRENT_DELEGATIONS, {"delegates": delegates})
                delegations = {row["delegator"]: row["delegate"] for row in cur.fetchall()}

        logger.info(
            "Fetched %s power changes, %s delegation events, %s transfers, %s delegations",
            len(samples), len(delegation_events), len(transfers), len(delegations),
        )
        return samples, delegation_events, transfers, delegations

    #### ACTIVITY CACHE ####
    @contextmanager
    def refresh_lock(self):
        """
        Hold the refresh advisory lock on its own connection for as long as the
        block runs. Yields False without waiting when another job holds it.
        """
        try:
            conn = self._connect(self.connection_string)
        except psycopg2.OperationalError as e:
            raise StorageUnavailable(f"Could not connect to database: {e}") from e
        try:
            conn.autocommit = True
            cur = conn.cursor()
            try:
                cur.execute(queries.TRY_REFRESH_LOCK, (queries.RECENT_ACTIVITY_LOCK_ID,))
                acquired = cur.fetchone()[0]
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                raise StorageUnavailable(f"Database connection lost: {e}") from e
            finally:
                cur.close()
            yield acquired
        finally:
            # closing the session releases the lock
            conn.close()

    def create_recent_activity_table(self):
        with self.cursor() as cur:
            cur.execute(queries.CREATE_RECENT_ACTIVITY_TABLE)

    def replace_recent_activity(self, records, threshold, window_days, batch_size=1000):
        """
        Swap in a complete activity set in one transaction. Callers hold
        refresh_lock around the recomputation. Returns the refresh timestamp.
        """
        rows = [
            (
                record.block_number,
                record.log_index,
                record.block_timestamp,
                record.activity_type.value,
                record.delegator_address,
                record.amount,
                record.from_delegate,
                record.to_delegate,
                record.delegate_address,
            )
            for record in records
        ]
        with self.cursor() as cur:
            cur.execute(queries.DELETE_RECENT_ACTIVITY)
            if rows:
                execute_values(cur, queries.INSERT_RECENT_ACTIVITY, rows, page_size=batch_size)
            cur.execute(
                queries.UPSERT_RECENT_ACTIVITY_META,
                {"threshold": threshold, "window_days": window_days},
            )
            return cur.fetchone()[0]

    def fetch_recent_activity(self, threshold):
        with self.cursor() as cur:
            cur.execute(queries.SELECT_RECENT_ACTIVITY_META)
            meta = cur.fetchone()
            cur.execute(queries.SELECT_RECENT_ACTIVITY, {"threshold": threshold})
            rows = [plain_row(row) for row in cur.fetchall()]
        return rows, (plain_row(meta) if meta else None)
