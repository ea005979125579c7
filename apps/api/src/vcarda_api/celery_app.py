"""Celery wiring for the reconciliation sweep.

Beat only carries the sweep while ``reconciler_worker_enabled`` is set; without a
broker the API lifespan runs the same sweep in-process instead.
"""

from __future__ import annotations

from typing import Any, Dict

from celery import Celery

from vcarda_api.core.settings import Settings, settings

SWEEP_TASK_NAME = "reconciliation.run_sweep"


def build_beat_schedule(config: Settings) -> Dict[str, Dict[str, Any]]:
    if not config.reconciler_worker_enabled:
        return {}
    return {
        "reconciliation-sweep": {
            "task": SWEEP_TASK_NAME,
            "schedule": float(config.reconciler_interval_seconds),
            "kwargs": {"repair": config.reconciler_repair_enabled},
            "options": {"queue": config.reconciliation_task_queue},
        },
    }


def create_celery_app(config: Settings = settings) -> Celery:
    broker_url = config.celery_broker_url or config.redis_url
    app = Celery(
        "vcarda_api",
        broker=broker_url,
        backend=config.celery_result_backend or broker_url,
    )
    app.conf.update(
        task_default_queue=config.celery_default_queue,
        task_routes={"reconciliation.*": {"queue": config.reconciliation_task_queue}},
        # A sweep is safe to re-run, so redeliver it if a worker dies mid-run.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        timezone="UTC",
        broker_connection_retry_on_startup=True,
        beat_schedule=build_beat_schedule(config),
    )
    app.autodiscover_tasks(["vcarda_api.celery_tasks"])
    return app


celery_app = create_celery_app()

__all__ = ["SWEEP_TASK_NAME", "build_beat_schedule", "celery_app", "create_celery_app"]
