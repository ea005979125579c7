from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from vcarda_api.core.errors import (
    InsufficientBalance,
    InvalidRequest,
    PermissionDenied,
    SubjectNotFound,
    TokenAlreadyConsumed,
    TokenRevoked,
)
from vcarda_api.core.settings import settings
from vcarda_api.models.business import LoyaltyProgram
from vcarda_api.models.loyalty import CardBalanceView, LoyaltyCard, PointTransaction, ProgramEnrollment
from vcarda_api.models.notification import Notification, NotificationStatus
from vcarda_api.models.token import QrScanLog, TokenStatus
from vcarda_api.models.user import User, UserStatusEnum
from vcarda_api.services.loyalty import PointsService
from vcarda_api.services.tokens import TokenService


def _services(session, key_resolver) -> tuple[PointsService, TokenService]:
    tokens = TokenService(session, key_resolver=key_resolver)
    return PointsService(session, token_service=tokens), tokens


@pytest.mark.asyncio
async def test_scan_awards_program_points_and_consumes_token(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)

        result = await points.scan_token(
            world.cashier,
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=world.program_id,
            idempotency_key="scan-request-1",
        )

        assert result.award.applied is True
        assert result.award.delta == 10
        assert result.award.new_balance == 10
        assert result.customer_id == world.customer_id
        assert result.token_id == issued.token_id

        assert (await tokens.describe(issued.token_id)).status == TokenStatus.CONSUMED.value
        transaction = await session.scalar(select(PointTransaction))
        assert transaction.idempotency_key == f"token:{issued.token_id}"
        assert transaction.source == "scan"
        assert transaction.token_id == issued.token_id
        assert transaction.performed_by == world.cashier_id

        log = await session.scalar(select(QrScanLog))
        assert log.success is True
        assert log.points_awarded == 10
        assert log.scanned_by == world.cashier_id

        view = await session.get(CardBalanceView, result.award.card_id, populate_existing=True)
        assert view.points_balance == 10
        notification = await session.scalar(select(Notification))
        assert notification.status == NotificationStatus.DELIVERED.value
        assert notification.user_id == world.customer_id


@pytest.mark.asyncio
async def test_rescan_by_another_request_is_rejected_and_logged(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        await points.scan_token(
            world.cashier,
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=world.program_id,
            idempotency_key="scan-request-1",
        )

        with pytest.raises(TokenAlreadyConsumed):
            await points.scan_token(
                world.owner,
                token_blob=issued.blob,
                business_id=world.business_id,
                program_id=world.program_id,
                idempotency_key="scan-request-2",
            )

        assert await points.get_balance(world.admin, customer_id=world.customer_id, program_id=world.program_id) == 10
        failures = (await session.execute(select(QrScanLog).where(QrScanLog.success.is_(False)))).scalars().all()
        assert [log.failure_reason for log in failures] == ["TokenAlreadyConsumed"]


@pytest.mark.asyncio
async def test_retried_scan_with_same_key_replays_award(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        request = dict(
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=world.program_id,
            idempotency_key="scan-request-1",
        )

        first = await points.scan_token(world.cashier, **request)
        retry = await points.scan_token(world.cashier, **request)

        assert first.award.applied is True
        assert retry.award.applied is False
        assert retry.award.transaction_id == first.award.transaction_id
        assert retry.award.new_balance == 10


@pytest.mark.asyncio
async def test_program_card_token_carries_its_program(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("program_card", world.customer_id, program_id=world.program_id)

        result = await points.scan_token(
            world.owner,
            token_blob=issued.blob,
            business_id=world.business_id,
            idempotency_key="scan-1",
            points=3,
        )

        assert result.program_id == world.program_id
        assert result.award.new_balance == 3


@pytest.mark.asyncio
async def test_scan_rejects_program_mismatch_and_missing_program(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        card_token = await tokens.issue("program_card", world.customer_id, program_id=world.program_id)
        customer_token = await tokens.issue("customer", world.customer_id)

        with pytest.raises(InvalidRequest):
            await points.scan_token(
                world.owner,
                token_blob=card_token.blob,
                business_id=world.business_id,
                program_id=uuid4(),
                idempotency_key="scan-1",
            )
        with pytest.raises(InvalidRequest):
            await points.scan_token(
                world.owner,
                token_blob=customer_token.blob,
                business_id=world.business_id,
                idempotency_key="scan-2",
            )

        assert (await tokens.describe(card_token.token_id)).status == TokenStatus.ACTIVE.value
        assert (await tokens.describe(customer_token.token_id)).status == TokenStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_outsider_cannot_scan_for_business(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)

        with pytest.raises(PermissionDenied):
            await points.scan_token(
                world.outsider,
                token_blob=issued.blob,
                business_id=world.business_id,
                program_id=world.program_id,
                idempotency_key="scan-1",
            )

        assert (await tokens.describe(issued.token_id)).status == TokenStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_unknown_business_is_not_found(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, _ = _services(session, key_resolver)

        with pytest.raises(SubjectNotFound):
            await points.award_points(
                world.owner,
                customer_id=world.customer_id,
                program_id=world.program_id,
                business_id=uuid4(),
                delta=5,
                idempotency_key="award-1",
            )


@pytest.mark.asyncio
async def test_promo_code_requires_customer_and_awards_promotional_points(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        promo = await tokens.issue("promo_code", uuid4(), program_id=world.program_id)

        with pytest.raises(InvalidRequest):
            await points.scan_token(
                world.cashier,
                token_blob=promo.blob,
                business_id=world.business_id,
                idempotency_key="promo-1",
            )

        result = await points.scan_token(
            world.cashier,
            token_blob=promo.blob,
            business_id=world.business_id,
            customer_id=world.customer_id,
            idempotency_key="promo-2",
            points=25,
        )

        assert result.customer_id == world.customer_id
        assert result.award.new_balance == 25
        transaction = await session.scalar(select(PointTransaction))
        assert transaction.source == "promotional"


@pytest.mark.asyncio
async def test_deleted_customer_token_is_left_usable(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        await session.execute(
            update(User)
            .where(User.id == world.customer_id)
            .values(status=UserStatusEnum.DELETED.value, deleted_at=datetime.now(timezone.utc))
        )
        await session.commit()

        with pytest.raises(SubjectNotFound):
            await points.scan_token(
                world.cashier,
                token_blob=issued.blob,
                business_id=world.business_id,
                program_id=world.program_id,
                idempotency_key="scan-1",
            )

        assert (await tokens.describe(issued.token_id)).status == TokenStatus.ACTIVE.value
        log = await session.scalar(select(QrScanLog))
        assert log.success is False
        assert log.failure_reason == "SubjectNotFound"


@pytest.mark.asyncio
async def test_staff_award_and_redeem_flow(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, _ = _services(session, key_resolver)
        awarded = await points.award_points(
            world.cashier,
            customer_id=world.customer_id,
            program_id=world.program_id,
            business_id=world.business_id,
            delta=50,
            idempotency_key="award-1",
            description="Welcome bonus",
        )
        redeemed = await points.redeem_points(
            world.cashier,
            customer_id=world.customer_id,
            program_id=world.program_id,
            business_id=world.business_id,
            points=20,
            idempotency_key="redeem-1",
        )

        assert awarded.new_balance == 50
        assert redeemed.delta == -20
        assert redeemed.new_balance == 30

        with pytest.raises(InsufficientBalance) as excinfo:
            await points.redeem_points(
                world.cashier,
                customer_id=world.customer_id,
                program_id=world.program_id,
                business_id=world.business_id,
                points=100,
                idempotency_key="redeem-2",
            )
        assert excinfo.value.shortfall == 70

        notifications = (await session.execute(select(Notification).order_by(Notification.created_at))).scalars().all()
        assert [item.category for item in notifications] == ["points_awarded", "points_redeemed"]


@pytest.mark.asyncio
async def test_redemption_never_provisions_a_card(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, _ = _services(session, key_resolver)

        with pytest.raises(SubjectNotFound):
            await points.redeem_points(
                world.owner,
                customer_id=world.customer_id,
                program_id=world.program_id,
                business_id=world.business_id,
                points=5,
                idempotency_key="redeem-1",
            )
        with pytest.raises(InvalidRequest):
            await points.redeem_points(
                world.owner,
                customer_id=world.customer_id,
                program_id=world.program_id,
                business_id=world.business_id,
                points=0,
                idempotency_key="redeem-2",
            )


@pytest.mark.asyncio
async def test_balance_and_history_are_limited_to_owner_or_admin(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, _ = _services(session, key_resolver)
        await points.award_points(
            world.owner,
            customer_id=world.customer_id,
            program_id=world.program_id,
            business_id=world.business_id,
            delta=12,
            idempotency_key="award-1",
        )

        assert await points.get_balance(world.customer, customer_id=world.customer_id, program_id=world.program_id) == 12
        assert await points.get_balance(world.admin, customer_id=world.customer_id, program_id=world.program_id) == 12
        with pytest.raises(PermissionDenied):
            await points.get_balance(world.cashier, customer_id=world.customer_id, program_id=world.program_id)

        entries, cursor = await points.history(
            world.customer, customer_id=world.customer_id, program_id=world.program_id
        )
        assert [entry.delta for entry in entries] == [12]
        assert cursor is None

        empty, _ = await points.history(
            world.admin, customer_id=world.customer_id, program_id=world.other_program_id
        )
        assert empty == []


@pytest.mark.asyncio
async def test_scan_stats_summarise_business_activity(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        request = dict(
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=world.program_id,
        )
        await points.scan_token(world.cashier, idempotency_key="scan-1", **request)
        with pytest.raises(TokenAlreadyConsumed):
            await points.scan_token(world.cashier, idempotency_key="scan-2", **request)

        stats = await points.scan_stats(world.owner, business_id=world.business_id)

        assert stats.total_scans == 2
        assert stats.successful_scans == 1
        assert stats.failed_scans == 1
        assert stats.points_awarded == 10
        assert stats.unique_customers == 1
        assert stats.failures_by_reason == {"TokenAlreadyConsumed": 1}
        assert stats.as_dict()["businessId"] == str(world.business_id)

        with pytest.raises(PermissionDenied):
            await points.scan_stats(world.outsider, business_id=world.business_id)


async def _balance_copies(session, card_id) -> tuple[int, int, int]:
    card = await session.get(LoyaltyCard, card_id, populate_existing=True)
    view = await session.get(CardBalanceView, card_id, populate_existing=True)
    enrollment = await session.get(ProgramEnrollment, card.enrollment_id, populate_existing=True)
    return card.points_balance, view.points_balance, enrollment.current_points


@pytest.mark.asyncio
async def test_single_point_award_moves_every_balance_copy_by_exactly_one(session_factory, world):
    target = dict(customer_id=world.customer_id, program_id=world.program_id, business_id=world.business_id)
    async with session_factory() as session:
        points = PointsService(session)
        seeded = await points.award_points(world.owner, delta=30, idempotency_key="seed", **target)
        assert await _balance_copies(session, seeded.card_id) == (30, 30, 30)

        result = await points.award_points(world.owner, delta=1, idempotency_key="single-point", **target)

        assert result.new_balance == 31
        assert await _balance_copies(session, seeded.card_id) == (31, 31, 31)


@pytest.mark.asyncio
async def test_rejected_rescan_provisions_nothing_at_another_business(session_factory, world, key_resolver):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        await points.scan_token(
            world.cashier,
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=world.program_id,
            idempotency_key="scan-1",
        )

        with pytest.raises(TokenAlreadyConsumed):
            await points.scan_token(
                world.outsider,
                token_blob=issued.blob,
                business_id=world.other_business_id,
                program_id=world.other_program_id,
                idempotency_key="scan-elsewhere",
            )

        other_cards = await session.scalar(
            select(func.count(LoyaltyCard.id)).where(LoyaltyCard.program_id == world.other_program_id)
        )
        other_enrollments = await session.scalar(
            select(func.count(ProgramEnrollment.id)).where(ProgramEnrollment.program_id == world.other_program_id)
        )
        assert other_cards == 0
        assert other_enrollments == 0
        failed = await session.scalar(select(QrScanLog).where(QrScanLog.success.is_(False)))
        assert failed.token_id == issued.token_id
        assert failed.failure_reason == "TokenAlreadyConsumed"


@pytest.mark.asyncio
async def test_revoked_token_scan_provisions_nothing(session_factory, world, key_resolver, reset_loyalty_store):
    async with session_factory() as session:
        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        await tokens.revoke(issued.token_id, reason="lost_device")

        with pytest.raises(TokenRevoked):
            await points.scan_token(
                world.cashier,
                token_blob=issued.blob,
                business_id=world.business_id,
                program_id=world.program_id,
                idempotency_key="scan-1",
            )

        assert await session.scalar(select(func.count(LoyaltyCard.id))) == 0
        assert await session.scalar(select(func.count(ProgramEnrollment.id))) == 0

    assert reset_loyalty_store.snapshot().as_dict()["tokens"]["outcomes"] == {"TokenRevoked": 1}


@pytest.mark.asyncio
async def test_new_programs_take_configured_award_defaults(session_factory, world, key_resolver, monkeypatch):
    monkeypatch.setattr(settings, "default_points_per_scan", 7)
    monkeypatch.setattr(settings, "default_max_points_per_award", 250)

    async with session_factory() as session:
        program = LoyaltyProgram(business_id=world.business_id, name="Pastry Club")
        session.add(program)
        await session.commit()
        assert program.points_per_scan == 7
        assert program.max_points_per_award == 250

        points, tokens = _services(session, key_resolver)
        issued = await tokens.issue("customer", world.customer_id)
        result = await points.scan_token(
            world.cashier,
            token_blob=issued.blob,
            business_id=world.business_id,
            program_id=program.id,
            idempotency_key="scan-1",
        )

    assert result.award.delta == 7
