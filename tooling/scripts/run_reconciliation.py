"""Trigger a loyalty balance reconciliation sweep once.

Intended usage: schedule via cron or run by hand after an incident to
compare derived balances against the canonical card balance.

Example:
    python tooling/scripts/run_reconciliation.py --trigger cron --repair
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a balance reconciliation sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the run row to describe the invocation source.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the number of cards compared per batch.",
    )
    parser.add_argument(
        "--repair",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Rewrite drifted derived balances (defaults to RECONCILER_REPAIR_ENABLED).",
    )
    return parser.parse_args()


async def _run(trigger: str, batch_size: int | None, repair: bool | None) -> dict[str, int | str]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from vcarda_api.tasks.reconciliation import run_reconciliation  # type: ignore import-position

    return await run_reconciliation(repair=repair, batch_size=batch_size, triggered_by=trigger)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.batch_size, args.repair))
    logger.success(
        "Reconciliation run completed",
        cards_scanned=summary.get("cards_scanned", 0),
        discrepancies_found=summary.get("discrepancies_found", 0),
        discrepancies_repaired=summary.get("discrepancies_repaired", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
