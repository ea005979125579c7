from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from vcarda_api.models.loyalty import CardBalanceView, LoyaltyCard, ProgramEnrollment
from vcarda_api.models.reconciliation import BalanceDiscrepancy, DiscrepancyKind, ReconciliationRun
from vcarda_api.models.token import QrToken, QrTokenArchive
from vcarda_api.services.loyalty import PointsService
from vcarda_api.services.loyalty.ledger import Ledger
from vcarda_api.services.loyalty.provisioning import ProvisioningResolver
from vcarda_api.services.notifications import Notifier
from vcarda_api.services.reconciliation import BalanceReconciler, ReconcilerState
from vcarda_api.services.tokens import TokenService


class ExplodingNotifier(Notifier):
    async def redeliver_failed(self, *, limit: int = 100) -> int:
        raise RuntimeError("mail queue offline")


def _reconciler(session, key_resolver, **kwargs) -> BalanceReconciler:
    return BalanceReconciler(
        session,
        token_service=TokenService(session, key_resolver=key_resolver),
        **kwargs,
    )


async def _award_with_view(session, world, delta=40):
    return await PointsService(session).award_points(
        world.owner,
        customer_id=world.customer_id,
        program_id=world.program_id,
        business_id=world.business_id,
        delta=delta,
        idempotency_key="award-1",
    )


@pytest.mark.asyncio
async def test_clean_state_reports_nothing_and_records_run(session_factory, world, key_resolver, reset_loyalty_store):
    async with session_factory() as session:
        await _award_with_view(session, world)
        reconciler = _reconciler(session, key_resolver, repair=False)

        summary = await reconciler.run(triggered_by="test")

        assert reconciler.state is ReconcilerState.IDLE
        assert summary.cards_scanned == 1
        assert summary.discrepancies_found == 0
        assert summary.findings == []

        run = await session.get(ReconciliationRun, summary.run_id, populate_existing=True)
        assert run.status == "succeeded"
        assert run.trigger == "test"
        assert run.cards_scanned == 1
        assert run.completed_at is not None

    assert reset_loyalty_store.snapshot().reconciliation == {"runs": 1, "discrepancies": 0, "repaired": 0}


@pytest.mark.asyncio
async def test_drift_is_reported_without_repair(session_factory, world, key_resolver):
    async with session_factory() as session:
        award = await _award_with_view(session, world)
        await session.execute(
            update(CardBalanceView).where(CardBalanceView.card_id == award.card_id).values(points_balance=3)
        )
        await session.execute(update(ProgramEnrollment).values(current_points=99))
        await session.commit()

        summary = await _reconciler(session, key_resolver, repair=False).run()

        kinds = sorted(finding.kind.value for finding in summary.findings)
        assert kinds == [DiscrepancyKind.ENROLLMENT_MISMATCH.value, DiscrepancyKind.VIEW_MISMATCH.value]
        assert summary.discrepancies_repaired == 0

        view = await session.get(CardBalanceView, award.card_id, populate_existing=True)
        assert view.points_balance == 3
        records = (await session.execute(select(BalanceDiscrepancy))).scalars().all()
        assert len(records) == 2
        assert not any(record.repaired for record in records)


@pytest.mark.asyncio
async def test_repair_rewrites_derived_copies_from_card_balance(session_factory, world, key_resolver, reset_loyalty_store):
    async with session_factory() as session:
        award = await _award_with_view(session, world)
        await session.execute(
            update(CardBalanceView).where(CardBalanceView.card_id == award.card_id).values(points_balance=3)
        )
        await session.execute(update(ProgramEnrollment).values(current_points=99))
        await session.commit()

        summary = await _reconciler(session, key_resolver, repair=True).run()

        assert summary.discrepancies_found == 2
        assert summary.discrepancies_repaired == 2
        view = await session.get(CardBalanceView, award.card_id, populate_existing=True)
        enrollment = await session.scalar(
            select(ProgramEnrollment).execution_options(populate_existing=True)
        )
        card = await session.get(LoyaltyCard, award.card_id, populate_existing=True)
        assert view.points_balance == 40
        assert enrollment.current_points == 40
        assert card.points_balance == 40

        records = (await session.execute(select(BalanceDiscrepancy))).scalars().all()
        assert all(record.repaired for record in records)

        second = await _reconciler(session, key_resolver, repair=True).run()
        assert second.discrepancies_found == 0

    assert reset_loyalty_store.snapshot().reconciliation == {"runs": 2, "discrepancies": 2, "repaired": 2}


@pytest.mark.asyncio
async def test_missing_view_is_created_on_repair(session_factory, world, key_resolver):
    async with session_factory() as session:
        card_id = await ProvisioningResolver(session).ensure_card(
            world.customer_id, world.program_id, world.business_id
        )
        await Ledger(session).award(card_id, 15, "award-1", "manual")

        summary = await _reconciler(session, key_resolver, repair=True).run()

        assert [finding.kind for finding in summary.findings] == [DiscrepancyKind.VIEW_MISSING]
        assert summary.discrepancies_repaired == 1
        view = await session.get(CardBalanceView, card_id, populate_existing=True)
        assert view.points_balance == 15


@pytest.mark.asyncio
async def test_ledger_sum_mismatch_is_reported_but_never_rewritten(session_factory, world, key_resolver):
    async with session_factory() as session:
        award = await _award_with_view(session, world)
        await session.execute(
            update(LoyaltyCard).where(LoyaltyCard.id == award.card_id).values(points_balance=999)
        )
        await session.execute(
            update(CardBalanceView).where(CardBalanceView.card_id == award.card_id).values(points_balance=999)
        )
        await session.execute(update(ProgramEnrollment).values(current_points=999))
        await session.commit()

        summary = await _reconciler(session, key_resolver, repair=True).run()

        assert len(summary.findings) == 1
        finding = summary.findings[0]
        assert finding.kind is DiscrepancyKind.LEDGER_SUM_MISMATCH
        assert finding.canonical_value == 999
        assert finding.observed_value == 40
        assert summary.discrepancies_repaired == 0
        card = await session.get(LoyaltyCard, award.card_id, populate_existing=True)
        assert card.points_balance == 999


@pytest.mark.asyncio
async def test_sweep_archives_retired_tokens_and_audits_signatures(session_factory, world, key_resolver):
    async with session_factory() as session:
        tokens = TokenService(session, key_resolver=key_resolver)
        stale = await tokens.issue("customer", world.customer_id)
        tampered = await tokens.issue("customer", world.customer_id)
        await tokens.consume(await tokens.authenticate(stale.blob), consumer_key="scan-1")
        await session.execute(
            update(QrToken)
            .where(QrToken.id == stale.token_id)
            .values(consumed_at=datetime.now(timezone.utc) - timedelta(days=365))
        )
        await session.execute(update(QrToken).where(QrToken.id == tampered.token_id).values(key_id="gone"))
        await session.commit()

        summary = await BalanceReconciler(session, token_service=tokens, repair=False).run()

        assert summary.tokens_archived == 1
        assert summary.tokens_revoked == 1
        archived = await session.scalar(select(QrTokenArchive))
        assert archived.token_id == stale.token_id
        assert (await tokens.describe(tampered.token_id)).status == "revoked"


@pytest.mark.asyncio
async def test_failed_sweep_marks_run_failed_and_returns_to_idle(session_factory, world, key_resolver):
    async with session_factory() as session:
        reconciler = _reconciler(session, key_resolver, notifier=ExplodingNotifier(session))

        with pytest.raises(RuntimeError):
            await reconciler.run(triggered_by="test")

        assert reconciler.state is ReconcilerState.IDLE
        run = await session.scalar(select(ReconciliationRun).execution_options(populate_existing=True))
        assert run.status == "failed"
        assert run.error == "RuntimeError"
