"""CLI + helpers for balance reconciliation sweeps.

Celery tasks, cron entries and operators all go through
:func:`run_reconciliation` so every trigger records a ``reconciliation_runs``
row the same way.
"""

from __future__ import annotations

import argparse
import asyncio
import json

from loguru import logger

from vcarda_api.core.settings import settings
from vcarda_api.db.session import async_session
from vcarda_api.workers.reconciler import ReconcilerWorker, SessionFactory


async def run_reconciliation(
    *,
    repair: bool | None = None,
    batch_size: int | None = None,
    triggered_by: str | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, int | str]:
    """Run one reconciliation sweep and return its summary."""

    worker = ReconcilerWorker(
        session_factory or async_session,
        batch_size=batch_size,
        repair=repair,
        trigger_label=triggered_by or settings.reconciler_trigger_label,
    )
    summary = await worker.run_once()
    logger.info("Reconciliation run finished", summary=summary)
    return summary


def run_reconciliation_sync(
    *,
    repair: bool | None = None,
    batch_size: int | None = None,
    triggered_by: str | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, int | str]:
    """Synchronous helper so Celery/cron jobs can reuse the async sweep."""

    return asyncio.run(
        run_reconciliation(
            repair=repair,
            batch_size=batch_size,
            triggered_by=triggered_by,
            session_factory=session_factory,
        )
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Loyalty balance reconciliation.")
    parser.add_argument(
        "--repair",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Rewrite derived balances from the canonical value (defaults to settings).",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Cards compared per batch.")
    parser.add_argument("--trigger", default="cli", help="Label recorded on the run row.")
    return parser


def cli() -> None:
    args = _build_parser().parse_args()
    summary = asyncio.run(
        run_reconciliation(repair=args.repair, batch_size=args.batch_size, triggered_by=args.trigger)
    )
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":  # pragma: no cover
    cli()
