"""Operator commands for stored rate limit windows.

Usage:
    python -m scripts.clear_rate_limits all
    python -m scripts.clear_rate_limits expired [--retention SECONDS]
    python -m scripts.clear_rate_limits list
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Callable, Dict, List, Optional

from config import load_config
from services.window_store import SqliteWindowStore, WindowStore, WindowStoreError

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 3600


def cmd_all(store: WindowStore, _: argparse.Namespace) -> int:
    removed = store.clear()
    print(f"Cleared {removed} rate limit records")
    return 0


def cmd_expired(store: WindowStore, args: argparse.Namespace) -> int:
    if args.retention < 0:
        print("--retention must be >= 0", file=sys.stderr)
        return 2
    cutoff_ms = int((time.time() - args.retention) * 1000)
    removed = store.purge_expired(cutoff_ms)
    print(f"Purged {removed} rate limit records closed more than {args.retention}s ago")
    return 0


def cmd_list(store: WindowStore, _: argparse.Namespace) -> int:
    windows = store.all()
    for window in windows:
        print(
            f"{window.type.value}\t{window.identifier}\t{window.endpoint}\t"
            f"start={window.window_start}\tcount={window.count}"
        )
    print(f"{len(windows)} window(s)")
    return 0


COMMANDS: Dict[str, Callable[[WindowStore, argparse.Namespace], int]] = {
    "all": cmd_all,
    "expired": cmd_expired,
    "list": cmd_list,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage stored rate limit windows")
    parser.add_argument("command", choices=COMMANDS.keys())
    parser.add_argument(
        "--retention",
        type=int,
        default=DEFAULT_RETENTION_SECONDS,
        help="keep windows that closed within this many seconds (expired only)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="sqlite:/// URL; defaults to DATABASE_URL",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    database_url = args.database_url or load_config().database_url
    try:
        store = SqliteWindowStore(database_url)
        return COMMANDS[args.command](store, args)
    except (WindowStoreError, ValueError) as exc:
        LOGGER.error("Rate limit maintenance failed: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    raise SystemExit(main())
