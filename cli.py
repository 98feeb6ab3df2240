#!/usr/bin/env python

###############################################################################
# Author: slobo.eth                                                           #
# Description:                                                                #
# Command line front end for the ENS delegate dashboard. Reads the            #
# voting_power db built by the ENS token indexer and prints JSON.             #
###############################################################################


#### IMPORTS ####
import argparse
import json
import logging
import sys
import time
from datetime import datetime
from decimal import Decimal

import dashboard
from config import CONNECTION_STRING, DEFAULT_WINDOW_DAYS, REFRESH_INTERVAL
from db import Storage
from errors import InvalidParameter, StorageUnavailable
from formatting import render_activity

logger = logging.getLogger(__name__)


#### OUTPUT ####
def json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def envelope(rows, **extra):
    body = {"message": "Data retrieved successfully", "data": rows}
    body.update(extra)
    return body


def emit(body, pretty=False):
    print(json.dumps(body, default=json_default, indent=2 if pretty else None))


#### COMMANDS ####
def cmd_top_delegates(storage, args):
    emit(envelope(dashboard.get_top_delegates(storage, args.limit)), args.pretty)


def cmd_delegate_rank(storage, args):
    emit(envelope(dashboard.get_delegate_rank(storage, args.delegate)), args.pretty)


def cmd_delegators(storage, args):
    emit(envelope(dashboard.get_delegators(storage, args.delegate)), args.pretty)


def cmd_power_history(storage, args):
    emit(envelope(dashboard.get_delegate_power_history(storage, args.delegate)), args.pretty)


def cmd_delegated_tokens(storage, args):
    emit(envelope(dashboard.get_delegated_token_count(storage)), args.pretty)


def cmd_top_holders(storage, args):
    emit(envelope(dashboard.get_top_holders(storage)), args.pretty)


def cmd_updated_at(storage, args):
    emit(envelope(dashboard.get_updated_at(storage)), args.pretty)


def cmd_recent_activity(storage, args):
    rows, updated_at = dashboard.get_recent_activity(
        storage,
        threshold=args.threshold,
        window_days=args.window_days,
        cached=args.cached,
    )
    if args.text:
        for row in rows:
            line = render_activity(row)
            if line:
                print(line)
        return
    emit(envelope(rows, updated_at=updated_at), args.pretty)


def cmd_init(storage, args):
    storage.create_recent_activity_table()
    print("Recent activity tables ready.")


def cmd_refresh(storage, args):
    every = None
    if args.every is not None:
        every = dashboard.parse_positive_int("every", args.every, REFRESH_INTERVAL)
    storage.create_recent_activity_table()
    if every is None:
        refreshed_at = dashboard.refresh_recent_activity(storage, args.threshold, args.window_days)
        print(f"Refreshed at: {refreshed_at}")
        return

    # one refresh at a time in this process; the advisory lock covers other processes
    while True:
        start_time = time.time()
        try:
            refreshed_at = dashboard.refresh_recent_activity(storage, args.threshold, args.window_days)
            print(f"Refreshed at: {refreshed_at}")
        except StorageUnavailable as e:
            logger.error("Refresh failed, retrying next interval: %s", e)
        elapsed = time.time() - start_time
        time.sleep(max(every - elapsed, 0))


#### PARSER ####
def build_parser():
    parser = argparse.ArgumentParser(prog="ens-dashboard", description="ENS delegate dashboard queries")
    parser.add_argument("--dsn", default=CONNECTION_STRING, help="psycopg2 connection string")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--pretty", action="store_true", help="indent JSON output")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("top-delegates")
    p.add_argument("--limit", default=None)
    p.set_defaults(func=cmd_top_delegates)

    for name, func in (
        ("delegate-rank", cmd_delegate_rank),
        ("delegators", cmd_delegators),
        ("power-history", cmd_power_history),
    ):
        p = sub.add_parser(name)
        p.add_argument("delegate")
        p.set_defaults(func=func)

    for name, func in (
        ("delegated-tokens", cmd_delegated_tokens),
        ("top-holders", cmd_top_holders),
        ("updated-at", cmd_updated_at),
        ("init", cmd_init),
    ):
        sub.add_parser(name).set_defaults(func=func)

    p = sub.add_parser("recent-activity")
    p.add_argument("--threshold", default=None, help="minimum change in wei, e.g. 10e20")
    p.add_argument("--window-days", default=None, help=f"lookback in days (default {DEFAULT_WINDOW_DAYS})")
    p.add_argument("--cached", action="store_true", help="read the refreshed table")
    p.add_argument("--text", action="store_true", help="print one line per activity")
    p.set_defaults(func=cmd_recent_activity)

    p = sub.add_parser("refresh")
    p.add_argument("--threshold", default=None)
    p.add_argument("--window-days", default=None)
    p.add_argument("--every", nargs="?", const=REFRESH_INTERVAL, default=None,
                   help=f"repeat every N seconds (default {REFRESH_INTERVAL})")
    p.set_defaults(func=cmd_refresh)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    storage = Storage(args.dsn)
    try:
        args.func(storage, args)
    except InvalidParameter as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except StorageUnavailable as e:
        print(f"Database unavailable: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
