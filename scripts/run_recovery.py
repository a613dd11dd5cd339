from __future__ import annotations

import argparse
import asyncio
import json
import sys

from chatgate.core.logging import configure_logging
from chatgate.persistence.db import SessionLocal
from chatgate.services.billing import expire_lapsed_subscriptions
from chatgate.services.recovery import run_recovery


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recover paid accounts that never activated.")
    parser.add_argument("--window-days", type=int, default=None, help="look-back window for orders")
    parser.add_argument(
        "--expire",
        action="store_true",
        help="expire lapsed trials and subscriptions before recovering",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        expired = await expire_lapsed_subscriptions(session) if args.expire else 0
        result = await run_recovery(session, window_days=args.window_days)
    summary = result.as_dict()
    summary["expired"] = expired
    print(json.dumps(summary, indent=2))
    # Non-zero exit lets cron wrappers alert on partial failures.
    return 1 if result.failures else 0


def main() -> int:
    # One-off reconciliation for operators; the worker cron runs the same pass.
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface setup or DB errors clearly
        print(f"run_recovery failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
