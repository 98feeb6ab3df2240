"""Display helpers for the recent activity feed."""
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from web3 import Web3

from classifier import ActivityType


@dataclass(frozen=True)
class ActivityLine:
    main_address: str
    verb: str
    positive: bool
    amount: int
    timestamp: int
    text: Optional[str] = None
    secondary_address: Optional[str] = None
    label: Optional[str] = None
    from_address: Optional[str] = None


GAIN = ("gained", True)
LOSS = ("lost", False)
BUY = ("bought", True)
SELL = ("sold", False)

# activity_type -> (main address field, verb, text, secondary address field, label)
ACTIVITY_DISPLAY = {
    ActivityType.SELF_DELEGATION_INITIATED: ("delegator_address", GAIN, "initiated self-delegation", None, None),
    ActivityType.DELEGATION_INITIATED: ("to_delegate", GAIN, None, "delegator_address", "new"),
    ActivityType.DELEGATION_REMOVED: ("from_delegate", LOSS, None, "delegator_address", "delegation removed"),
    ActivityType.DELEGATION_TO_SELF: ("delegator_address", GAIN, "switched to self-delegation", None, None),
    ActivityType.DELEGATION_CHANGED: ("to_delegate", GAIN, None, "delegator_address", None),
    ActivityType.TOKENS_RECEIVED_AND_DELEGATED: ("delegate_address", GAIN, None, "delegator_address", "new"),
    ActivityType.SELF_TOKENS_RECEIVED: ("delegate_address", BUY, "self-delegated", None, None),
    ActivityType.SELF_TOKENS_SENT: ("delegate_address", SELL, "self-delegated", None, None),
    ActivityType.TOKENS_RECEIVED: ("delegate_address", GAIN, None, "delegator_address", "bought"),
    ActivityType.TOKENS_SENT: ("delegate_address", LOSS, None, "delegator_address", "sold"),
}


def shorten_address(address):
    return f"{address[:6]}...{address[-4:]}"


def format_token(value):
    """Whole ENS with thousands separators."""
    tokens = Decimal(Web3.from_wei(int(value), "ether"))
    return f"{tokens.quantize(Decimal(1)):,}"


def format_compact(value):
    tokens = Decimal(Web3.from_wei(int(value), "ether"))
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}m"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return f"{tokens.normalize():f}"


def time_ago(timestamp, now=None):
    now = time.time() if now is None else now
    diff = now - timestamp
    if diff < 60 * 60:
        return f"{int(diff // 60)} min"
    if diff < 60 * 60 * 24:
        return f"{int(diff // 3600)} hrs"
    return f"{int(diff // 86400)} days"


def describe_activity(item):
    """Map a serialized activity record to a display line, or None if it can't be shown."""
    try:
        activity_type = ActivityType(item["activity_type"])
    except ValueError:
        return None
    main_field, (verb, positive), text, secondary_field, label = ACTIVITY_DISPLAY[activity_type]

    main = item.get(main_field)
    if not main:
        return None
    from_address = None
    if activity_type == ActivityType.DELEGATION_CHANGED:
        from_address = item.get("from_delegate")
        if not from_address:
            return None

    return ActivityLine(
        main_address=main,
        verb=verb,
        positive=positive,
        amount=item["amount"],
        timestamp=item["block_timestamp"],
        text=text,
        secondary_address=item.get(secondary_field) if secondary_field else None,
        label=label,
        from_address=from_address,
    )


def render_activity(item, now=None):
    line = describe_activity(item)
    if line is None:
        return None
    sign = "+" if line.positive else "-"
    parts = [shorten_address(line.main_address), line.verb, f"{sign}{format_compact(line.amount)}"]
    if line.text:
        parts.append(f"({line.text})")
    if line.secondary_address:
        detail = shorten_address(line.secondary_address)
        if line.label:
            detail += f" {line.label}"
        if line.from_address:
            detail += f" changed from {shorten_address(line.from_address)}"
        parts.append(f"[{detail}]")
    parts.append(f"{time_ago(line.timestamp, now)} ago")
    return " ".join(parts)
