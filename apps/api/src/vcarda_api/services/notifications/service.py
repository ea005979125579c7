"""Post-commit balance notifications and read-cache refresh."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.settings import get_settings
from vcarda_api.models.business import LoyaltyProgram
from vcarda_api.models.loyalty import CardBalanceView, LoyaltyCard
from vcarda_api.models.notification import Notification, NotificationCategory, NotificationStatus
from vcarda_api.models.user import User
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .backend import EmailBackend, SMTPConfig, SMTPEmailBackend
from .templates import render_points_changed


def build_default_email_backend() -> Optional[EmailBackend]:
    config = SMTPConfig.from_settings(get_settings())
    return SMTPEmailBackend(config) if config is not None else None


class Notifier:
    """Best-effort follow-up to a committed ledger mutation.

    Nothing raised here reaches the caller; the ledger result stands regardless
    and the Reconciler picks up whatever this step missed.
    """

    def __init__(
        self,
        session: AsyncSession,
        backend: Optional[EmailBackend] = None,
        *,
        observability: LoyaltyObservabilityStore | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._db = session
        self._backend = backend if backend is not None else build_default_email_backend()
        self._observability = observability or get_loyalty_store()
        self._max_attempts = max_attempts or get_settings().notification_max_attempts

    async def notify_awarded(
        self,
        *,
        card_id: UUID,
        customer_id: UUID,
        delta: int,
        new_balance: int,
    ) -> Notification | None:
        try:
            canonical = await self.refresh_view(card_id)
            notification = await self._record(
                card_id=card_id,
                customer_id=customer_id,
                delta=delta,
                balance=canonical if canonical is not None else new_balance,
            )
        except Exception:
            await self._safe_rollback()
            self._observability.record_notification("failed")
            logger.exception(
                "Balance notification could not be recorded",
                card_id=str(card_id),
                customer_id=str(customer_id),
            )
            return None

        await self.deliver(notification)
        return notification

    async def refresh_view(self, card_id: UUID) -> int | None:
        """Copy the canonical balance into the read cache. Returns the copied value."""

        card = (
            await self._db.execute(
                select(LoyaltyCard.customer_id, LoyaltyCard.program_id, LoyaltyCard.points_balance).where(
                    LoyaltyCard.id == card_id
                )
            )
        ).one_or_none()
        if card is None:
            await self._db.commit()
            return None

        for _ in range(2):
            view = await self._db.get(CardBalanceView, card_id, populate_existing=True)
            now = datetime.now(timezone.utc)
            if view is None:
                self._db.add(
                    CardBalanceView(
                        card_id=card_id,
                        customer_id=card.customer_id,
                        program_id=card.program_id,
                        points_balance=card.points_balance,
                        refreshed_at=now,
                    )
                )
            else:
                view.points_balance = card.points_balance
                view.refreshed_at = now
            try:
                await self._db.commit()
            except IntegrityError:
                # another writer created the row first; update it instead
                await self._db.rollback()
                continue
            return int(card.points_balance)
        return None

    async def _record(self, *, card_id: UUID, customer_id: UUID, delta: int, balance: int) -> Notification:
        program_name = await self._db.scalar(
            select(LoyaltyProgram.name)
            .join(LoyaltyCard, LoyaltyCard.program_id == LoyaltyProgram.id)
            .where(LoyaltyCard.id == card_id)
        )
        contact_name = await self._db.scalar(select(User.display_name).where(User.id == customer_id))
        rendered = render_points_changed(
            delta=delta,
            new_balance=balance,
            program_name=program_name,
            contact_name=contact_name,
        )
        category = NotificationCategory.POINTS_AWARDED if delta > 0 else NotificationCategory.POINTS_REDEEMED
        notification = Notification(
            user_id=customer_id,
            card_id=card_id,
            category=category.value,
            title=rendered.title,
            message=rendered.text_body,
            metadata_json={"delta": delta, "balance": balance, "programName": program_name},
            status=NotificationStatus.PENDING.value,
        )
        self._db.add(notification)
        await self._db.commit()
        return notification

    async def deliver(self, notification: Notification) -> bool:
        """Attempt email delivery for a stored notification; returns ``True`` on success."""

        email = await self._db.scalar(select(User.email).where(User.id == notification.user_id))
        notification.attempts = (notification.attempts or 0) + 1
        if self._backend is None or not email:
            # in-app only
            notification.status = NotificationStatus.DELIVERED.value
            notification.delivered_at = datetime.now(timezone.utc)
            await self._commit_quietly(notification)
            self._observability.record_notification("delivered")
            return True

        metadata = notification.metadata_json or {}
        rendered = render_points_changed(
            delta=int(metadata.get("delta", 0)),
            new_balance=int(metadata.get("balance", 0)),
            program_name=metadata.get("programName"),
            contact_name=None,
        )
        try:
            await self._backend.send_email(
                email,
                rendered.title,
                notification.message,
                body_html=rendered.html_body,
            )
        except Exception as exc:
            notification.status = NotificationStatus.FAILED.value
            notification.last_error = type(exc).__name__
            await self._commit_quietly(notification)
            self._observability.record_notification("failed")
            logger.warning(
                "Notification delivery failed",
                notification_id=str(notification.id),
                attempts=notification.attempts,
                error_type=type(exc).__name__,
            )
            return False

        notification.status = NotificationStatus.DELIVERED.value
        notification.delivered_at = datetime.now(timezone.utc)
        notification.last_error = None
        await self._commit_quietly(notification)
        self._observability.record_notification("delivered")
        logger.info("Delivered balance notification", notification_id=str(notification.id))
        return True

    async def redeliver_failed(self, *, limit: int = 100) -> int:
        """Retry failed notifications that still have attempts left."""

        result = await self._db.execute(
            select(Notification)
            .where(
                Notification.status == NotificationStatus.FAILED.value,
                Notification.attempts < self._max_attempts,
            )
            .order_by(Notification.created_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        pending = list(result.scalars())
        await self._db.commit()

        delivered = 0
        for notification in pending:
            if await self.deliver(notification):
                delivered += 1
        return delivered

    async def _commit_quietly(self, notification: Notification) -> None:
        try:
            await self._db.commit()
        except SQLAlchemyError:
            await self._safe_rollback()
            logger.exception("Failed to persist notification status", notification_id=str(notification.id))

    async def _safe_rollback(self) -> None:
        try:
            await self._db.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after notification failure did not complete")


__all__ = ["Notifier", "build_default_email_backend"]
