from __future__ import annotations

from loguru import logger

from vcarda_api.celery_app import SWEEP_TASK_NAME, celery_app
from vcarda_api.core.settings import settings
from vcarda_api.tasks.reconciliation import run_reconciliation_sync


@celery_app.task(
    name=SWEEP_TASK_NAME,
    queue=settings.reconciliation_task_queue,
)
def run_reconciliation_sweep(repair: bool | None = None) -> dict[str, object]:
    """Execute one reconciliation sweep via Celery beat or an operator enqueue."""

    if not settings.reconciler_worker_enabled:
        logger.info("Reconciler disabled; skipping Celery task.")
        return {"cards_scanned": 0, "skipped": True}
    return run_reconciliation_sync(repair=repair, triggered_by="celery")
