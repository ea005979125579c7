"""Persistent single-use state for issued tokens."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.db.guards import store_guard
from vcarda_api.models.token import QrToken, QrTokenArchive, TokenArchiveStatus, TokenStatus
from vcarda_api.services.tokens.codec import TokenPayload


class ConsumeOutcome(str, Enum):
    CONSUMED = "consumed"
    ALREADY_CONSUMED = "already_consumed"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"


@dataclass(slots=True)
class TokenDescription:
    token_id: UUID
    subject_kind: str
    subject_id: UUID
    program_id: UUID | None
    status: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: datetime | None
    revoked_at: datetime | None
    revoke_reason: str | None
    archived: bool
    consumer_key: str | None = None


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenStore:
    """Records issued tokens and enforces single consumption with guarded updates."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def add(self, payload: TokenPayload, tag: str) -> QrToken:
        record = QrToken(
            id=payload.token_id,
            subject_kind=payload.subject_kind,
            subject_id=payload.subject_id,
            program_id=payload.program_id,
            nonce=payload.nonce,
            key_id=payload.key_id,
            version=payload.version,
            tag=tag,
            issued_at=_from_epoch(payload.issued_at),
            expires_at=_from_epoch(payload.expires_at),
            status=TokenStatus.ACTIVE.value,
        )
        async with store_guard(self._db, "tokens.add"):
            self._db.add(record)
            await self._db.commit()
        return record

    async def get(self, token_id: UUID) -> QrToken | None:
        async with store_guard(self._db, "tokens.get"):
            return await self._db.get(QrToken, token_id, populate_existing=True)

    async def try_consume(self, token_id: UUID, consumer_key: str | None = None) -> ConsumeOutcome:
        """Flip an active token to consumed in one conditional update.

        A repeat call carrying the consumer key that won the first time reports
        ``CONSUMED`` again so a timed-out scan can be retried.
        """

        now = datetime.now(timezone.utc)
        async with store_guard(self._db, "tokens.consume"):
            result = await self._db.execute(
                update(QrToken)
                .where(QrToken.id == token_id, QrToken.status == TokenStatus.ACTIVE.value)
                .values(
                    status=TokenStatus.CONSUMED.value,
                    consumed_at=now,
                    consumer_key=consumer_key,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self._db.commit()
                logger.info("Token consumed", token_id=str(token_id))
                return ConsumeOutcome.CONSUMED

            row = (
                await self._db.execute(
                    select(QrToken.status, QrToken.consumer_key).where(QrToken.id == token_id)
                )
            ).one_or_none()
            await self._db.commit()

        if row is None:
            return ConsumeOutcome.NOT_FOUND
        status, winner_key = row
        if status == TokenStatus.REVOKED.value:
            return ConsumeOutcome.REVOKED
        if consumer_key and winner_key == consumer_key:
            logger.info("Token consumption retried by original consumer", token_id=str(token_id))
            return ConsumeOutcome.CONSUMED
        return ConsumeOutcome.ALREADY_CONSUMED

    async def revoke(self, token_id: UUID, reason: str) -> TokenStatus | None:
        """Revoke an active token. Returns the resulting status, ``None`` when unknown."""

        now = datetime.now(timezone.utc)
        async with store_guard(self._db, "tokens.revoke"):
            result = await self._db.execute(
                update(QrToken)
                .where(QrToken.id == token_id, QrToken.status == TokenStatus.ACTIVE.value)
                .values(
                    status=TokenStatus.REVOKED.value,
                    revoked_at=now,
                    revoke_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            status = await self._db.scalar(select(QrToken.status).where(QrToken.id == token_id))
            await self._db.commit()

        if result.rowcount == 1:
            logger.info("Token revoked", token_id=str(token_id), reason=reason)
        return TokenStatus(status) if status else None

    async def revoke_for_subject(self, subject_kind: str, subject_id: UUID, reason: str = "subject_deleted") -> int:
        now = datetime.now(timezone.utc)
        async with store_guard(self._db, "tokens.revoke_for_subject"):
            result = await self._db.execute(
                update(QrToken)
                .where(
                    QrToken.subject_kind == subject_kind,
                    QrToken.subject_id == subject_id,
                    QrToken.status == TokenStatus.ACTIVE.value,
                )
                .values(
                    status=TokenStatus.REVOKED.value,
                    revoked_at=now,
                    revoke_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        revoked = result.rowcount or 0
        if revoked:
            logger.info(
                "Revoked tokens for subject",
                subject_kind=subject_kind,
                subject_id=str(subject_id),
                revoked=revoked,
                reason=reason,
            )
        return revoked

    async def list_active(self, *, limit: int) -> list[QrToken]:
        """Most recently issued active tokens, used by integrity spot checks."""

        async with store_guard(self._db, "tokens.list_active"):
            result = await self._db.execute(
                select(QrToken)
                .where(QrToken.status == TokenStatus.ACTIVE.value)
                .order_by(QrToken.issued_at.desc())
                .limit(limit)
                .execution_options(populate_existing=True)
            )
            tokens = list(result.scalars())
            await self._db.commit()
        return tokens

    async def archive_retired(
        self,
        *,
        grace_days: int,
        limit: int,
        now: datetime | None = None,
    ) -> int:
        """Move retired tokens older than ``grace_days`` into the archive, one batch per call."""

        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=grace_days)
        async with store_guard(self._db, "tokens.archive"):
            result = await self._db.execute(
                select(QrToken)
                .where(
                    or_(
                        and_(QrToken.status == TokenStatus.CONSUMED.value, QrToken.consumed_at < cutoff),
                        and_(QrToken.status == TokenStatus.REVOKED.value, QrToken.revoked_at < cutoff),
                        QrToken.expires_at < cutoff,
                    )
                )
                .order_by(QrToken.expires_at)
                .limit(limit)
                .execution_options(populate_existing=True)
            )
            tokens = list(result.scalars())
            if not tokens:
                await self._db.commit()
                return 0

            for token in tokens:
                if token.status == TokenStatus.ACTIVE.value:
                    final_status = TokenArchiveStatus.EXPIRED.value
                    retired_at = token.expires_at
                elif token.status == TokenStatus.CONSUMED.value:
                    final_status = TokenArchiveStatus.CONSUMED.value
                    retired_at = token.consumed_at
                else:
                    final_status = TokenArchiveStatus.REVOKED.value
                    retired_at = token.revoked_at
                self._db.add(
                    QrTokenArchive(
                        token_id=token.id,
                        subject_kind=token.subject_kind,
                        subject_id=token.subject_id,
                        program_id=token.program_id,
                        final_status=final_status,
                        nonce=token.nonce,
                        key_id=token.key_id,
                        version=token.version,
                        tag=token.tag,
                        issued_at=token.issued_at,
                        expires_at=token.expires_at,
                        retired_at=retired_at,
                        consumer_key=token.consumer_key,
                        revoke_reason=token.revoke_reason,
                    )
                )
            await self._db.flush()
            for token in tokens:
                await self._db.delete(token)
            await self._db.commit()

        logger.info("Archived retired tokens", archived=len(tokens), cutoff=cutoff.isoformat())
        return len(tokens)

    async def describe(self, token_id: UUID) -> TokenDescription | None:
        async with store_guard(self._db, "tokens.describe"):
            live = await self._db.get(QrToken, token_id, populate_existing=True)
            archived = None
            if live is None:
                archived = await self._db.scalar(
                    select(QrTokenArchive).where(QrTokenArchive.token_id == token_id)
                )
            await self._db.commit()

        if live is not None:
            return TokenDescription(
                token_id=live.id,
                subject_kind=live.subject_kind,
                subject_id=live.subject_id,
                program_id=live.program_id,
                status=live.status,
                issued_at=_ensure_aware(live.issued_at),
                expires_at=_ensure_aware(live.expires_at),
                consumed_at=_ensure_aware(live.consumed_at),
                revoked_at=_ensure_aware(live.revoked_at),
                revoke_reason=live.revoke_reason,
                archived=False,
                consumer_key=live.consumer_key,
            )
        if archived is not None:
            final_status = archived.final_status
            return TokenDescription(
                token_id=archived.token_id,
                subject_kind=archived.subject_kind,
                subject_id=archived.subject_id,
                program_id=archived.program_id,
                status=final_status,
                issued_at=_ensure_aware(archived.issued_at),
                expires_at=_ensure_aware(archived.expires_at),
                consumed_at=_ensure_aware(archived.retired_at) if final_status == TokenArchiveStatus.CONSUMED.value else None,
                revoked_at=_ensure_aware(archived.retired_at) if final_status == TokenArchiveStatus.REVOKED.value else None,
                revoke_reason=archived.revoke_reason,
                archived=True,
                consumer_key=archived.consumer_key,
            )
        return None


__all__ = ["ConsumeOutcome", "TokenDescription", "TokenStore"]
