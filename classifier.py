"""
Recent activity classification.

Turns voting-power changes (DelegateVotesChanged logs) plus the DelegateChanged
and Transfer logs around them into a reverse-chronological feed of activity
records. Related logs are correlated by their position in the block: the
contract emits a DelegateChanged immediately before the power update of the
delegate it affects, and a Transfer shortly before the power update of the
delegate holding the sender's or receiver's votes.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

from config import (
    ADJACENCY_LOOKBACK,
    DEFAULT_THRESHOLD,
    DELEGATION_LOOKAHEAD,
    REVIEW_THRESHOLD,
    ZERO_ADDRESS,
)

logger = logging.getLogger(__name__)


class ActivityType(str, Enum):
    SELF_DELEGATION_INITIATED = "self_delegation_initiated"
    DELEGATION_INITIATED = "delegation_initiated"
    DELEGATION_REMOVED = "delegation_removed"
    DELEGATION_TO_SELF = "delegation_to_self"
    DELEGATION_CHANGED = "delegation_changed"
    TOKENS_RECEIVED_AND_DELEGATED = "tokens_received_and_delegated"
    SELF_TOKENS_RECEIVED = "self_tokens_received"
    SELF_TOKENS_SENT = "self_tokens_sent"
    TOKENS_RECEIVED = "tokens_received"
    TOKENS_SENT = "tokens_sent"


DELEGATION_TYPES = frozenset({
    ActivityType.SELF_DELEGATION_INITIATED,
    ActivityType.DELEGATION_INITIATED,
    ActivityType.DELEGATION_REMOVED,
    ActivityType.DELEGATION_TO_SELF,
    ActivityType.DELEGATION_CHANGED,
})


def normalize_address(address):
    if address is None:
        return None
    return address.lower()


def is_zero(address):
    return address is None or address == ZERO_ADDRESS


@dataclass(frozen=True)
class VotingPowerSample:
    delegate_address: str
    block_number: int
    log_index: int
    block_timestamp: int
    voting_power: int
    previous_power: int = 0

    def __post_init__(self):
        object.__setattr__(self, "delegate_address", normalize_address(self.delegate_address))

    @property
    def voting_power_change(self) -> int:
        return self.voting_power - self.previous_power

    @property
    def key(self):
        return (self.delegate_address, self.block_number, self.log_index)


@dataclass(frozen=True)
class DelegationChangeEvent:
    block_number: int
    log_index: int
    block_timestamp: int
    delegator_address: str
    from_delegate: str
    to_delegate: str

    def __post_init__(self):
        for name in ("delegator_address", "from_delegate", "to_delegate"):
            object.__setattr__(self, name, normalize_address(getattr(self, name)))

    def touches(self, delegate):
        return delegate in (self.from_delegate, self.to_delegate)


@dataclass(frozen=True)
class TransferEvent:
    block_number: int
    log_index: int
    from_address: str
    to_address: str

    def __post_init__(self):
        object.__setattr__(self, "from_address", normalize_address(self.from_address))
        object.__setattr__(self, "to_address", normalize_address(self.to_address))


@dataclass(frozen=True)
class ActivityRecord:
    activity_type: ActivityType
    amount: int
    block_number: int
    log_index: int
    block_timestamp: int
    delegator_address: Optional[str] = None
    delegate_address: Optional[str] = None
    from_delegate: Optional[str] = None
    to_delegate: Optional[str] = None

    @property
    def sort_key(self):
        return (
            self.block_number,
            self.log_index,
            self.activity_type.value,
            self.delegate_address or self.to_delegate or "",
            self.delegator_address or "",
        )

    def to_dict(self):
        return {
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp,
            "activity_type": self.activity_type.value,
            "delegator_address": self.delegator_address,
            "amount": self.amount,
            "from_delegate": self.from_delegate,
            "to_delegate": self.to_delegate,
            "delegate_address": self.delegate_address,
        }


#### POWER CHANGES ####
def derive_power_changes(samples: Iterable[VotingPowerSample]) -> List[VotingPowerSample]:
    """
    Fill in previous_power with the delegate's prior voting_power (0 for the
    first sample). Must be given the full history, not a windowed subset.
    """
    ordered = sorted(samples, key=lambda s: (s.delegate_address, s.block_number, s.log_index))
    result = []
    last_power = {}
    for sample in ordered:
        previous = last_power.get(sample.delegate_address, 0)
        result.append(replace(sample, previous_power=previous))
        last_power[sample.delegate_address] = sample.voting_power
    return result


def select_significant(samples, threshold=DEFAULT_THRESHOLD, since=None):
    selected = []
    for sample in samples:
        if since is not None and sample.block_timestamp < since:
            continue
        change = abs(sample.voting_power_change)
        if change == 0 or change < threshold:
            continue
        selected.append(sample)
    return selected


#### DELEGATIONS ####
def delegation_type(event: DelegationChangeEvent) -> ActivityType:
    # first match wins
    if is_zero(event.from_delegate) and event.to_delegate == event.delegator_address:
        return ActivityType.SELF_DELEGATION_INITIATED
    if is_zero(event.from_delegate):
        return ActivityType.DELEGATION_INITIATED
    if is_zero(event.to_delegate):
        return ActivityType.DELEGATION_REMOVED
    if event.to_delegate == event.delegator_address:
        return ActivityType.DELEGATION_TO_SELF
    return ActivityType.DELEGATION_CHANGED


def affected_delegate(event):
    if is_zero(event.to_delegate):
        return event.from_delegate
    return event.to_delegate


def classify_delegations(events, sample_index, since=None, lookahead=DELEGATION_LOOKAHEAD):
    records = []
    for event in events:
        if since is not None and event.block_timestamp < since:
            continue
        delegate = affected_delegate(event)
        if is_zero(delegate):
            continue
        sample = None
        for offset in range(1, lookahead + 1):
            sample = sample_index.get((delegate, event.block_number, event.log_index + offset))
            if sample is not None:
                break
        if sample is None:
            logger.debug(
                "No power change for %s after delegation at block %s log %s",
                delegate, event.block_number, event.log_index,
            )
            continue
        records.append(ActivityRecord(
            activity_type=delegation_type(event),
            amount=abs(sample.voting_power_change),
            block_number=event.block_number,
            log_index=event.log_index,
            block_timestamp=event.block_timestamp,
            delegator_address=event.delegator_address,
            from_delegate=event.from_delegate,
            to_delegate=event.to_delegate,
        ))
    return records


#### TOKEN MOVEMENTS ####
def invert_delegations(delegations: Dict[str, str]):
    delegators_of = defaultdict(set)
    for delegator, delegate in delegations.items():
        delegate = normalize_address(delegate)
        if is_zero(delegate):
            continue
        delegators_of[delegate].add(normalize_address(delegator))
    return delegators_of


def find_delegator(sample, transfers_by_block, delegators_of, lookback=ADJACENCY_LOOKBACK):
    """Nearest transfer in the preceding logs that moved a delegator's tokens."""
    delegators = delegators_of.get(sample.delegate_address)
    if not delegators:
        return None
    earliest = sample.log_index - lookback
    nearby = [
        t for t in transfers_by_block.get(sample.block_number, ())
        if earliest <= t.log_index < sample.log_index
    ]
    for transfer in sorted(nearby, key=lambda t: t.log_index, reverse=True):
        if sample.voting_power_change > 0:
            candidates = (transfer.to_address, transfer.from_address)
        else:
            candidates = (transfer.from_address, transfer.to_address)
        for address in candidates:
            if address in delegators:
                return address
    return None


def token_movement_type(sample, delegator, initiated):
    received = sample.voting_power_change > 0
    if initiated:
        return ActivityType.TOKENS_RECEIVED_AND_DELEGATED
    if delegator == sample.delegate_address:
        return ActivityType.SELF_TOKENS_RECEIVED if received else ActivityType.SELF_TOKENS_SENT
    return ActivityType.TOKENS_RECEIVED if received else ActivityType.TOKENS_SENT


def claimed_by_delegations(events, lookahead=DELEGATION_LOOKAHEAD):
    claimed = set()
    for event in events:
        for delegate in (event.from_delegate, event.to_delegate):
            if is_zero(delegate):
                continue
            for offset in range(1, lookahead + 1):
                claimed.add((delegate, event.block_number, event.log_index + offset))
    return claimed


def classify_token_movements(
    samples,
    delegation_events,
    transfers,
    delegations,
    lookback=ADJACENCY_LOOKBACK,
    lookahead=DELEGATION_LOOKAHEAD,
    review_threshold=REVIEW_THRESHOLD,
):
    claimed = claimed_by_delegations(delegation_events, lookahead)

    transfers_by_block = defaultdict(list)
    for transfer in transfers:
        transfers_by_block[transfer.block_number].append(transfer)

    initiations = defaultdict(list)
    for event in delegation_events:
        if is_zero(event.from_delegate):
            initiations[(event.block_number, event.delegator_address)].append(event.log_index)

    delegators_of = invert_delegations(delegations)

    records = []
    for sample in samples:
        if sample.key in claimed:
            continue
        delegator = find_delegator(sample, transfers_by_block, delegators_of, lookback)
        if delegator is None:
            report_unattributed(sample, review_threshold)
            continue
        initiated = any(
            log_index < sample.log_index
            for log_index in initiations.get((sample.block_number, delegator), ())
        )
        records.append(ActivityRecord(
            activity_type=token_movement_type(sample, delegator, initiated),
            amount=abs(sample.voting_power_change),
            block_number=sample.block_number,
            log_index=sample.log_index,
            block_timestamp=sample.block_timestamp,
            delegator_address=delegator,
            delegate_address=sample.delegate_address,
        ))
    return records


def report_unattributed(sample, review_threshold=REVIEW_THRESHOLD):
    amount = abs(sample.voting_power_change)
    level = logging.WARNING if amount >= review_threshold else logging.DEBUG
    logger.log(
        level,
        "Unattributed power change of %s for %s at block %s log %s",
        sample.voting_power_change, sample.delegate_address, sample.block_number, sample.log_index,
    )


#### ENTRY POINT ####
def classify_activity(
    samples,
    delegation_events,
    transfers,
    delegations,
    threshold=DEFAULT_THRESHOLD,
    since=None,
    lookback=ADJACENCY_LOOKBACK,
    lookahead=DELEGATION_LOOKAHEAD,
    review_threshold=REVIEW_THRESHOLD,
) -> List[ActivityRecord]:
    """
    Classify power changes into activity records, newest first.

    `samples` must already carry previous_power computed over full history
    (see derive_power_changes). `delegations` maps delegator -> current delegate.
    Samples and delegation events that cannot be correlated are dropped.
    """
    significant = select_significant(samples, threshold, since)
    sample_index = {sample.key: sample for sample in significant}
    delegation_events = list(delegation_events)

    records = classify_delegations(delegation_events, sample_index, since, lookahead)
    records.extend(classify_token_movements(
        significant,
        delegation_events,
        transfers,
        delegations,
        lookback=lookback,
        lookahead=lookahead,
        review_threshold=review_threshold,
    ))
    records.sort(key=lambda record: record.sort_key, reverse=True)
    return records
