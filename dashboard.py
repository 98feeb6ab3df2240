import logging
import time
from decimal import Decimal, InvalidOperation

from web3 import Web3

from classifier import classify_activity
from config import (
    ADJACENCY_LOOKBACK,
    DEFAULT_THRESHOLD,
    DEFAULT_WINDOW_DAYS,
    DELEGATION_LOOKAHEAD,
    REVIEW_THRESHOLD,
    TOP_DELEGATES_LIMIT,
)
from errors import InvalidParameter
import queries

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


#### PARAMETERS ####
def parse_threshold(value, default=DEFAULT_THRESHOLD):
    """Accepts ints or numeric strings, including '10e20' style notation."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise InvalidParameter("threshold", value, "must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidParameter("threshold", value, "must be a number")
    if not amount.is_finite():
        raise InvalidParameter("threshold", value, "must be finite")
    if amount < 0:
        raise InvalidParameter("threshold", value, "must not be negative")
    if amount != amount.to_integral_value():
        raise InvalidParameter("threshold", value, "must be a whole number of wei")
    return int(amount)


def parse_positive_int(name, value, default):
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(name, value, "must be an integer")
    if number <= 0:
        raise InvalidParameter(name, value, "must be positive")
    return number


def parse_window_days(value, default=DEFAULT_WINDOW_DAYS):
    return parse_positive_int("window_days", value, default)


def parse_address(value, name="delegate"):
    if not value:
        raise InvalidParameter(name, value, "parameter is required")
    if not Web3.is_address(value):
        raise InvalidParameter(name, value, "not an address")
    return value.lower()


def window_start(window_days, now=None):
    now = time.time() if now is None else now
    return int(now) - window_days * SECONDS_PER_DAY


#### DASHBOARD ####
def get_top_delegates(storage, limit=TOP_DELEGATES_LIMIT, now=None):
    limit = parse_positive_int("limit", limit, TOP_DELEGATES_LIMIT)
    return storage.fetch_all(
        queries.SELECT_TOP_DELEGATES,
        {"limit": limit, "since": window_start(30, now)},
    )


def get_delegate_rank(storage, delegate):
    return storage.fetch_all(queries.SELECT_DELEGATE_RANK, {"delegate": parse_address(delegate)})


def get_delegators(storage, delegate):
    return storage.fetch_all(queries.SELECT_DELEGATORS, {"delegate": parse_address(delegate)})


def get_delegate_power_history(storage, delegate):
    return storage.fetch_all(
        queries.SELECT_DELEGATE_POWER_HISTORY,
        {"delegate": parse_address(delegate)},
    )


def get_delegated_token_count(storage):
    return storage.fetch_all(queries.SELECT_DELEGATED_TOKEN_COUNT)


def get_top_holders(storage, now=None):
    return storage.fetch_all(queries.SELECT_TOP_HOLDERS, {"since": window_start(30, now)})


def get_updated_at(storage):
    return storage.fetch_all(queries.SELECT_UPDATED_AT)


#### RECENT ACTIVITY ####
def compute_recent_activity(
    storage,
    threshold=None,
    window_days=None,
    lookback=ADJACENCY_LOOKBACK,
    lookahead=DELEGATION_LOOKAHEAD,
    review_threshold=REVIEW_THRESHOLD,
    now=None,
):
    threshold = parse_threshold(threshold)
    window_days = parse_window_days(window_days)
    since = window_start(window_days, now)

    samples, delegation_events, transfers, delegations = storage.fetch_activity_inputs(since, threshold)
    return classify_activity(
        samples,
        delegation_events,
        transfers,
        delegations,
        threshold=threshold,
        since=since,
        lookback=lookback,
        lookahead=lookahead,
        review_threshold=review_threshold,
    )


def get_recent_activity(storage, threshold=None, window_days=None, cached=False, now=None):
    """
    Returns (rows, updated_at). Live results are current, so updated_at is
    None; cached results carry the time of the last refresh.

    The cached table only answers requests for the window it was built with
    and thresholds at or above the one it was built with. Anything else, or a
    cache that was never refreshed, is computed live.
    """
    threshold = parse_threshold(threshold)
    window_days = parse_window_days(window_days)

    if cached:
        rows, meta = storage.fetch_recent_activity(threshold)
        if meta and meta["window_days"] == window_days and threshold >= meta["threshold"]:
            return rows, meta["refreshed_at"]
        logger.info(
            "Cached activity does not cover threshold %s over %s days, computing live",
            threshold, window_days,
        )

    records = compute_recent_activity(storage, threshold, window_days, now=now)
    return [record.to_dict() for record in records], None


def refresh_recent_activity(storage, threshold=None, window_days=None, now=None):
    """Full recomputation of the cached feed. Returns the refresh time or None if skipped."""
    threshold = parse_threshold(threshold)
    window_days = parse_window_days(window_days)

    with storage.refresh_lock() as acquired:
        if not acquired:
            logger.warning("Another refresh is in progress, skipped")
            return None
        start_time = time.time()
        records = compute_recent_activity(storage, threshold, window_days, now=now)
        refreshed_at = storage.replace_recent_activity(records, threshold, window_days)
        end_time = time.time()

    logger.info("Stored %s activity records in %.2f seconds", len(records), end_time - start_time)
    return refreshed_at
