from contextlib import contextmanager

import pytest

from classifier import DelegationChangeEvent, TransferEvent, VotingPowerSample


DELEGATE = "0x" + "d" * 40
OTHER_DELEGATE = "0x" + "b" * 40
DELEGATOR = "0x" + "a" * 40
OTHER_DELEGATOR = "0x" + "c" * 40
STRANGER = "0x" + "e" * 40

NOW = 1_700_000_000
TS = NOW - 3600


def sample(delegate, block, log, power, previous=0, ts=TS):
    return VotingPowerSample(
        delegate_address=delegate,
        block_number=block,
        log_index=log,
        block_timestamp=ts,
        voting_power=power,
        previous_power=previous,
    )


def delegation(delegator, from_delegate, to_delegate, block, log, ts=TS):
    return DelegationChangeEvent(
        block_number=block,
        log_index=log,
        block_timestamp=ts,
        delegator_address=delegator,
        from_delegate=from_delegate,
        to_delegate=to_delegate,
    )


def transfer(from_address, to_address, block, log):
    return TransferEvent(block_number=block, log_index=log, from_address=from_address, to_address=to_address)


class FakeStorage:
    """In-memory stand-in for db.Storage."""

    def __init__(self, inputs=None, rows=None, meta=None, lock_free=True):
        self.inputs = inputs or ([], [], [], {})
        self.rows = rows or []
        self.meta = meta
        self.lock_free = lock_free
        self.calls = []
        self.stored = None

    def fetch_all(self, query, params=None):
        self.calls.append(("fetch_all", query, params))
        return list(self.rows)

    def fetch_activity_inputs(self, since, threshold):
        self.calls.append(("fetch_activity_inputs", since, threshold))
        return self.inputs

    def create_recent_activity_table(self):
        self.calls.append(("create_recent_activity_table",))

    @contextmanager
    def refresh_lock(self):
        self.calls.append(("refresh_lock",))
        try:
            yield self.lock_free
        finally:
            self.calls.append(("refresh_unlock",))

    def replace_recent_activity(self, records, threshold, window_days):
        self.calls.append(("replace_recent_activity", threshold, window_days))
        self.stored = list(records)
        return "2024-08-01T00:00:00+00:00"

    def fetch_recent_activity(self, threshold):
        self.calls.append(("fetch_recent_activity", threshold))
        return list(self.rows), self.meta


@pytest.fixture
def fake_storage():
    return FakeStorage()
