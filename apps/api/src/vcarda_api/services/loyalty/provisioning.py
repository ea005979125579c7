"""Idempotent provisioning of the customer, enrollment and card behind an award."""

from __future__ import annotations

import secrets
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import ConflictRetryable, StoreUnavailable, SubjectNotFound
from vcarda_api.db.guards import store_guard
from vcarda_api.models.business import LoyaltyProgram
from vcarda_api.models.loyalty import EnrollmentStatus, LoyaltyCard, ProgramEnrollment
from vcarda_api.models.user import User, UserRoleEnum, UserStatusEnum
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from vcarda_api.services.loyalty.identity import IdentityLookup, build_default_identity_lookup


def generate_card_number() -> str:
    return f"VC-{secrets.token_hex(5).upper()}"


class ProvisioningResolver:
    """Ensures exactly one enrollment and card exist per (customer, program).

    Concurrent callers race on the unique constraints; the loser rolls back and
    returns the winner's card.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        identity: IdentityLookup | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._identity = identity or build_default_identity_lookup()
        self._observability = observability or get_loyalty_store()

    async def _find_card_id(self, customer_id: UUID, program_id: UUID) -> UUID | None:
        return await self._db.scalar(
            select(LoyaltyCard.id).where(
                LoyaltyCard.customer_id == customer_id,
                LoyaltyCard.program_id == program_id,
            )
        )

    async def ensure_card(self, customer_id: UUID, program_id: UUID, business_id: UUID) -> UUID:
        """Return the card id for the pair, provisioning prerequisites on first use."""

        async with store_guard(self._db, "provisioning.ensure_card"):
            program = (
                await self._db.execute(
                    select(LoyaltyProgram.business_id, LoyaltyProgram.is_active).where(
                        LoyaltyProgram.id == program_id
                    )
                )
            ).one_or_none()
            if program is None or not program.is_active or program.business_id != business_id:
                await self._db.rollback()
                raise SubjectNotFound("Loyalty program not found for this business.")

            await self.ensure_customer(customer_id)

            card_id = await self._find_card_id(customer_id, program_id)
            if card_id is not None:
                await self._db.commit()
                return card_id

            for attempt in range(2):
                try:
                    card_id = await self._insert_enrollment_and_card(customer_id, program_id, business_id)
                except ConflictRetryable:
                    self._observability.record_provisioning("conflict")
                    logger.warning(
                        "Concurrent card provisioning detected; re-reading",
                        customer_id=str(customer_id),
                        program_id=str(program_id),
                        attempt=attempt,
                    )
                    card_id = await self._find_card_id(customer_id, program_id)
                    await self._db.commit()
                    if card_id is not None:
                        return card_id
                    continue

                self._observability.record_provisioning("card_created")
                logger.info(
                    "Provisioned loyalty card",
                    customer_id=str(customer_id),
                    program_id=str(program_id),
                    card_id=str(card_id),
                )
                return card_id

        raise StoreUnavailable()

    async def _insert_enrollment_and_card(
        self, customer_id: UUID, program_id: UUID, business_id: UUID
    ) -> UUID:
        """Insert-if-absent enrollment, then card; a lost race surfaces as :class:`ConflictRetryable`."""

        try:
            enrollment = await self._db.scalar(
                select(ProgramEnrollment)
                .where(
                    ProgramEnrollment.customer_id == customer_id,
                    ProgramEnrollment.program_id == program_id,
                )
                .execution_options(populate_existing=True)
            )
            if enrollment is None:
                enrollment = ProgramEnrollment(
                    customer_id=customer_id,
                    program_id=program_id,
                    status=EnrollmentStatus.ACTIVE.value,
                )
                self._db.add(enrollment)
                await self._db.flush()
                self._observability.record_provisioning("enrollment_created")
            elif enrollment.status != EnrollmentStatus.ACTIVE.value:
                enrollment.status = EnrollmentStatus.ACTIVE.value

            card = LoyaltyCard(
                customer_id=customer_id,
                program_id=program_id,
                business_id=business_id,
                enrollment_id=enrollment.id,
                card_number=generate_card_number(),
                points_balance=0,
            )
            self._db.add(card)
            await self._db.flush()
            card_id = card.id
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise ConflictRetryable(customer_id=str(customer_id), program_id=str(program_id)) from exc
        return card_id

    async def ensure_customer(self, customer_id: UUID) -> User:
        """Return the customer row, synthesizing a provisional one when absent.

        Soft-deleted customers raise :class:`SubjectNotFound`.
        """

        user = await self._db.get(User, customer_id, populate_existing=True)
        if user is not None:
            if user.is_deleted:
                await self._db.rollback()
                raise SubjectNotFound("This customer account no longer exists.")
            return user

        record = await self._identity.lookup(customer_id)
        email = record.email if record else None
        for candidate_email in (email, None) if email else (None,):
            user = User(
                id=customer_id,
                email=candidate_email,
                display_name=record.display_name if record else None,
                phone_number=record.phone_number if record else None,
                role=UserRoleEnum.CUSTOMER.value,
                status=UserStatusEnum.ACTIVE.value,
                is_provisional=True,
            )
            self._db.add(user)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                existing = await self._db.get(User, customer_id, populate_existing=True)
                if existing is not None:
                    if existing.is_deleted:
                        raise SubjectNotFound("This customer account no longer exists.")
                    return existing
                # the email belongs to another account; retry without it
                continue

            self._observability.record_provisioning("customer_synthesized")
            logger.info(
                "Synthesized provisional customer",
                customer_id=str(customer_id),
                has_identity=record is not None,
            )
            return user

        raise StoreUnavailable()


__all__ = ["ProvisioningResolver", "generate_card_number"]
