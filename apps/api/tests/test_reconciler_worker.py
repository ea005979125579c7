import asyncio

import pytest

from vcarda_api.celery_app import SWEEP_TASK_NAME, build_beat_schedule
from vcarda_api.celery_tasks import reconciliation as reconciliation_tasks
from vcarda_api.core.settings import settings
from vcarda_api.models.reconciliation import ReconciliationRun
from vcarda_api.services.loyalty import PointsService
from vcarda_api.tasks.reconciliation import run_reconciliation
from vcarda_api.workers.reconciler import ReconcilerWorker


@pytest.mark.asyncio
async def test_worker_run_once_records_run(session_factory, world):
    async with session_factory() as session:
        await PointsService(session).award_points(
            world.owner,
            customer_id=world.customer_id,
            program_id=world.program_id,
            business_id=world.business_id,
            delta=20,
            idempotency_key="award-1",
        )

    worker = ReconcilerWorker(session_factory, interval_seconds=60, repair=False, trigger_label="unit-default")

    summary = await worker.run_once(triggered_by="unit-test")
    assert summary["cards_scanned"] == 1
    assert summary["discrepancies_found"] == 0

    async with session_factory() as session:
        runs = (await session.execute(ReconciliationRun.__table__.select())).fetchall()
        assert len(runs) == 1
        row = runs[0]
        assert row.status == "succeeded"
        assert row.trigger == "unit-test"
        assert row.metadata["triggered_by"] == "unit-test"


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory, world):
    worker = ReconcilerWorker(session_factory, interval_seconds=3600)

    worker.start()
    worker.start()
    assert worker.is_running is True

    await asyncio.sleep(0.05)
    await worker.stop()

    assert worker.is_running is False


@pytest.mark.asyncio
async def test_run_reconciliation_helper_uses_trigger_label(session_factory, world):
    summary = await run_reconciliation(session_factory=session_factory, triggered_by="cron", repair=True)

    assert summary["cards_scanned"] == 0

    async with session_factory() as session:
        runs = (await session.execute(ReconciliationRun.__table__.select())).fetchall()
        assert [row.trigger for row in runs] == ["cron"]
        assert runs[0].repair is True


def test_celery_task_skips_when_reconciler_disabled(monkeypatch):
    monkeypatch.setattr(settings, "reconciler_worker_enabled", False)

    def _fail(**kwargs):
        raise AssertionError("sweep should not run")

    monkeypatch.setattr(reconciliation_tasks, "run_reconciliation_sync", _fail)

    result = reconciliation_tasks.run_reconciliation_sweep()

    assert result == {"cards_scanned": 0, "skipped": True}


def test_celery_task_runs_sweep_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "reconciler_worker_enabled", True)
    calls = []

    def _fake_sync(**kwargs):
        calls.append(kwargs)
        return {"cards_scanned": 3}

    monkeypatch.setattr(reconciliation_tasks, "run_reconciliation_sync", _fake_sync)

    result = reconciliation_tasks.run_reconciliation_sweep(repair=True)

    assert result == {"cards_scanned": 3}
    assert calls == [{"repair": True, "triggered_by": "celery"}]


def test_beat_schedule_only_carries_sweep_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "reconciler_worker_enabled", False)
    assert build_beat_schedule(settings) == {}

    monkeypatch.setattr(settings, "reconciler_worker_enabled", True)
    monkeypatch.setattr(settings, "reconciler_repair_enabled", True)
    entry = build_beat_schedule(settings)["reconciliation-sweep"]

    assert entry["task"] == SWEEP_TASK_NAME
    assert entry["kwargs"] == {"repair": True}
    assert entry["options"]["queue"] == settings.reconciliation_task_queue
