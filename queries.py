from config import ONE_ENS, ZERO_ADDRESS

# ******* RECENT ACTIVITY INPUTS *******

# LAG runs over the whole delegate_power history before the window filter,
# otherwise the first change inside the window has no baseline.
SELECT_POWER_CHANGES = """
WITH with_lag AS (
    SELECT
        delegate_address,
        block_number,
        block_timestamp,
        log_index,
        voting_power,
        LAG(voting_power, 1, 0) OVER (
            PARTITION BY delegate_address ORDER BY block_number, log_index
        ) AS previous_power
    FROM delegate_power
),
with_change AS (
    SELECT *,
        voting_power - previous_power AS voting_power_change
    FROM with_lag
)
SELECT
    delegate_address,
    block_number,
    log_index,
    block_timestamp,
    voting_power,
    previous_power
FROM with_change
WHERE block_timestamp >= %(since)s
AND abs(voting_power_change) >= %(threshold)s
ORDER BY block_number DESC, log_index DESC;
"""

SELECT_DELEGATION_EVENTS = """
SELECT
    block_number,
    log_index,
    block_timestamp,
    (args->>'delegator')::varchar(42) AS delegator_address,
    (args->>'fromDelegate')::varchar(42) AS from_delegate,
    (args->>'toDelegate')::varchar(42) AS to_delegate
FROM events
WHERE event_type = 'DelegateChanged'
AND block_timestamp >= %(since)s
ORDER BY block_number, log_index;
"""

SELECT_TRANSFER_EVENTS = """
SELECT
    block_number,
    log_index,
    (args->>'from')::varchar(42) AS from_address,
    (args->>'to')::varchar(42) AS to_address
FROM events
WHERE event_type = 'Transfer'
AND block_timestamp >= %(since)s
ORDER BY block_number, log_index;
"""

SELECT_CURRENT_DELEGATIONS = """
SELECT
    lower(delegator) AS delegator,
    lower(delegate) AS delegate
FROM current_delegations
WHERE lower(delegate) = ANY(%(delegates)s);
"""

# ******* RECENT ACTIVITY CACHE *******

CREATE_RECENT_ACTIVITY_TABLE = """
CREATE TABLE IF NOT EXISTS recent_activity (
    block_number BIGINT NOT NULL,
    log_index INTEGER NOT NULL,
    block_timestamp BIGINT NOT NULL,
    activity_type VARCHAR(50) NOT NULL,
    delegator_address VARCHAR(42),
    amount NUMERIC(78,0) NOT NULL,
    from_delegate VARCHAR(42),
    to_delegate VARCHAR(42),
    delegate_address VARCHAR(42)
);

CREATE INDEX IF NOT EXISTS idx_recent_activity_block ON recent_activity (block_number DESC, log_index DESC);

CREATE TABLE IF NOT EXISTS recent_activity_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    refreshed_at TIMESTAMP WITH TIME ZONE NOT NULL,
    threshold NUMERIC(78,0) NOT NULL,
    window_days INTEGER NOT NULL
);
"""

# Arbitrary key shared by every refresh job. Session level, so it is held for
# the whole recomputation and released when the lock connection closes.
RECENT_ACTIVITY_LOCK_ID = 8_151_204

TRY_REFRESH_LOCK = "SELECT pg_try_advisory_lock(%s);"

DELETE_RECENT_ACTIVITY = "DELETE FROM recent_activity;"

INSERT_RECENT_ACTIVITY = """
INSERT INTO recent_activity (
    block_number, log_index, block_timestamp, activity_type, delegator_address,
    amount, from_delegate, to_delegate, delegate_address
)
VALUES %s
"""

UPSERT_RECENT_ACTIVITY_META = """
INSERT INTO recent_activity_meta (id, refreshed_at, threshold, window_days)
VALUES (1, CURRENT_TIMESTAMP, %(threshold)s, %(window_days)s)
ON CONFLICT (id) DO UPDATE SET
    refreshed_at = EXCLUDED.refreshed_at,
    threshold = EXCLUDED.threshold,
    window_days = EXCLUDED.window_days
RETURNING refreshed_at;
"""

SELECT_RECENT_ACTIVITY = """
SELECT
    block_number,
    block_timestamp,
    activity_type,
    delegator_address,
    amount,
    from_delegate,
    to_delegate,
    delegate_address
FROM recent_activity
WHERE amount >= %(threshold)s
ORDER BY block_number DESC, log_index DESC;
"""

SELECT_RECENT_ACTIVITY_META = """
SELECT refreshed_at, threshold, window_days FROM recent_activity_meta WHERE id = 1;
"""

# ******* DASHBOARD *******

SELECT_TOP_DELEGATES = f"""
WITH ranked AS (
    SELECT
        ROW_NUMBER() OVER (ORDER BY SUM(delegator_balance) DESC) AS rank,
        delegate AS delegate_address,
        SUM(delegator_balance) AS voting_power,
        COUNT(DISTINCT delegator) AS delegations,
        COUNT(DISTINCT CASE WHEN delegator_balance >= {ONE_ENS} THEN delegator END) AS non_zero_delegations
    FROM current_delegations
    WHERE lower(delegate) != '{ZERO_ADDRESS}'
    GROUP BY delegate
    ORDER BY voting_power DESC
    LIMIT %(limit)s
)
SELECT
    ranked.*,
    COALESCE(past.voting_power, 0) AS voting_power_30d_ago
FROM ranked
LEFT JOIN LATERAL (
    SELECT voting_power
    FROM delegate_power dp
    WHERE lower(dp.delegate_address) = lower(ranked.delegate_address)
    AND dp.block_timestamp < %(since)s
    ORDER BY dp.block_number DESC, dp.log_index DESC
    LIMIT 1
) past ON TRUE
ORDER BY ranked.rank;
"""

SELECT_DELEGATE_RANK = f"""
WITH ranked_delegates AS (
    SELECT
        ROW_NUMBER() OVER (ORDER BY SUM(delegator_balance) DESC) AS rank,
        delegate,
        SUM(delegator_balance) AS total_balance
    FROM current_delegations
    WHERE lower(delegate) != '{ZERO_ADDRESS}'
    GROUP BY delegate
)
SELECT rank, delegate, total_balance
FROM ranked_delegates
WHERE lower(delegate) = lower(%(delegate)s);
"""

SELECT_DELEGATORS = """
SELECT
    delegator,
    prior_delegate,
    delegator_balance AS delegator_tokens,
    delegated_timestamp
FROM current_delegations
WHERE lower(delegate) = lower(%(delegate)s)
ORDER BY delegator_balance DESC;
"""

SELECT_DELEGATE_POWER_HISTORY = """
SELECT
    block_timestamp,
    block_number,
    log_index,
    voting_power
FROM delegate_power
WHERE lower(delegate_address) = lower(%(delegate)s)
ORDER BY block_number DESC, log_index DESC;
"""

SELECT_DELEGATED_TOKEN_COUNT = """
SELECT sum(voting_power) AS delegated_tokens FROM current_delegate_power;
"""

SELECT_TOP_HOLDERS = """
SELECT
    h.address,
    h.balance,
    h.block_number,
    h.rank,
    COALESCE(past.balance, 0) AS balance_30d_ago
FROM top_1000_holders h
LEFT JOIN LATERAL (
    SELECT tb.balance
    FROM token_balances tb
    WHERE tb.address = h.address
    AND tb.block_number < (
        SELECT COALESCE(MIN(block_number), 0) FROM events WHERE block_timestamp >= %(since)s
    )
    ORDER BY tb.block_number DESC
    LIMIT 1
) past ON TRUE
ORDER BY h.balance DESC;
"""

SELECT_UPDATED_AT = """
SELECT block_timestamp FROM events
WHERE block_number = (SELECT MAX(block_number) FROM events)
LIMIT 1;
"""
