"""Issue, validate and consume signed single-use tokens."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from vcarda_api.core.errors import (
    InvalidRequest,
    SubjectNotFound,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from vcarda_api.core.settings import settings
from vcarda_api.models.token import QrToken, TokenArchiveStatus, TokenStatus, TokenSubjectKind
from vcarda_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from vcarda_api.services.secrets.signing_keys import (
    SigningKeyResolver,
    SigningKeyRing,
    build_default_signing_key_resolver,
)
from vcarda_api.services.tokens.codec import TokenPayload, b64url_decode, b64url_encode
from vcarda_api.services.tokens.signer import TokenSigner
from vcarda_api.services.tokens.store import ConsumeOutcome, TokenDescription, TokenStore


@dataclass(slots=True)
class IssuedToken:
    token_id: UUID
    blob: str
    subject_kind: str
    subject_id: UUID
    program_id: UUID | None
    expires_at: datetime


@dataclass(slots=True)
class TokenValidation:
    valid: bool
    token_id: UUID | None = None
    subject_kind: str | None = None
    subject_id: UUID | None = None
    program_id: UUID | None = None
    reason: str | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if not self.valid:
            return {"valid": False, "reason": self.reason, "message": self.message}
        return {
            "valid": True,
            "tokenId": str(self.token_id),
            "subjectKind": self.subject_kind,
            "subjectId": str(self.subject_id),
            "programId": str(self.program_id) if self.program_id else None,
        }


def build_signer(ring: SigningKeyRing) -> TokenSigner:
    return TokenSigner(
        ring.keys,
        ring.active_key_id,
        default_ttl_seconds=settings.token_default_ttl_seconds,
        max_ttl_seconds=settings.token_max_ttl_seconds,
        clock_skew_seconds=settings.token_clock_skew_seconds,
    )


def _unusable_error(description: TokenDescription | None) -> TokenInvalid | None:
    """Map a stored token state to the reason it can no longer be used, if any."""

    if description is None:
        # authentic but purged or never recorded
        return TokenRevoked()
    if description.status == TokenStatus.CONSUMED.value:
        return TokenAlreadyConsumed()
    if description.status == TokenStatus.REVOKED.value:
        return TokenRevoked()
    if description.status == TokenArchiveStatus.EXPIRED.value:
        return TokenExpired()
    return None


def payload_from_record(record: QrToken) -> TokenPayload:
    """Rebuild the signed payload from a stored token row."""

    def _epoch(value: datetime) -> int:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())

    return TokenPayload(
        token_id=record.id,
        subject_kind=record.subject_kind,
        subject_id=record.subject_id,
        program_id=record.program_id,
        issued_at=_epoch(record.issued_at),
        expires_at=_epoch(record.expires_at),
        nonce=record.nonce,
        key_id=record.key_id,
        version=record.version,
    )


class TokenService:
    """Coordinates the signer, the key ring and the token store."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        key_resolver: SigningKeyResolver | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = session
        self._store = TokenStore(session)
        self._key_resolver = key_resolver or build_default_signing_key_resolver()
        self._observability = observability or get_loyalty_store()

    @property
    def store(self) -> TokenStore:
        return self._store

    async def _signer(self) -> TokenSigner:
        ring = await self._key_resolver.get()
        return build_signer(ring)

    async def issue(
        self,
        subject_kind: str,
        subject_id: UUID,
        *,
        ttl_seconds: int | None = None,
        program_id: UUID | None = None,
    ) -> IssuedToken:
        try:
            kind = TokenSubjectKind(subject_kind)
        except ValueError as exc:
            raise InvalidRequest(f"Unsupported token subject kind '{subject_kind}'.") from exc
        if kind is TokenSubjectKind.PROGRAM_CARD and program_id is None:
            raise InvalidRequest("Program card tokens require a program id.")

        signer = await self._signer()
        signed = signer.issue(kind.value, subject_id, ttl_seconds=ttl_seconds, program_id=program_id)
        await self._store.add(signed.payload, b64url_encode(signed.tag))

        self._observability.record_token_issued(kind.value)
        logger.info(
            "Issued token",
            token_id=str(signed.payload.token_id),
            subject_kind=kind.value,
            subject_id=str(subject_id),
            key_id=signed.payload.key_id,
            expires_at=signed.payload.expires_at,
        )
        return IssuedToken(
            token_id=signed.payload.token_id,
            blob=signed.blob,
            subject_kind=kind.value,
            subject_id=subject_id,
            program_id=program_id,
            expires_at=datetime.fromtimestamp(signed.payload.expires_at, tz=timezone.utc),
        )

    async def authenticate(self, blob: str) -> TokenPayload:
        """Check format, signature and expiry only; single-use state is left to :meth:`consume`."""

        signer = await self._signer()
        return signer.verify(blob)

    async def verify(self, blob: str, *, consumer_key: str | None = None) -> TokenPayload:
        """Authenticate ``blob`` and confirm it is still usable. Never consumes.

        A token already consumed under ``consumer_key`` still passes, so the
        original consumer can retry a scan that timed out.
        """

        payload = await self.authenticate(blob)
        await self.ensure_usable(payload, consumer_key=consumer_key)
        return payload

    async def ensure_usable(self, payload: TokenPayload, *, consumer_key: str | None = None) -> None:
        """Raise the reason an authenticated token can no longer be used, if any."""

        description = await self._store.describe(payload.token_id)
        if (
            description is not None
            and description.status == TokenStatus.CONSUMED.value
            and not description.archived
            and consumer_key
            and description.consumer_key == consumer_key
        ):
            return
        error = _unusable_error(description)
        if error is not None:
            raise error

    async def validate(self, blob: str) -> TokenValidation:
        """Verify-only check reporting the failure reason instead of raising it."""

        try:
            payload = await self.verify(blob)
        except TokenInvalid as exc:
            self._observability.record_token_outcome(exc.kind)
            logger.info("Token validation failed", reason=exc.kind)
            return TokenValidation(valid=False, reason=exc.kind, message=exc.message)

        self._observability.record_token_outcome("valid")
        return TokenValidation(
            valid=True,
            token_id=payload.token_id,
            subject_kind=payload.subject_kind,
            subject_id=payload.subject_id,
            program_id=payload.program_id,
        )

    async def consume(self, payload: TokenPayload, *, consumer_key: str | None = None) -> None:
        outcome = await self._store.try_consume(payload.token_id, consumer_key)
        if outcome is ConsumeOutcome.CONSUMED:
            self._observability.record_token_outcome("consumed")
            return

        if outcome is ConsumeOutcome.ALREADY_CONSUMED:
            error: TokenInvalid = TokenAlreadyConsumed()
        elif outcome is ConsumeOutcome.REVOKED:
            error = TokenRevoked()
        else:
            # moved to the archive since it was authenticated
            error = _unusable_error(await self._store.describe(payload.token_id)) or TokenRevoked()
        self._observability.record_token_outcome(error.kind)
        logger.info(
            "Token consumption rejected",
            token_id=str(payload.token_id),
            outcome=outcome.value,
        )
        raise error

    async def revoke(self, token_id: UUID, *, reason: str) -> TokenStatus:
        status = await self._store.revoke(token_id, reason)
        if status is None:
            raise SubjectNotFound("Token not found.")
        return status

    async def revoke_for_subject(self, subject_kind: str, subject_id: UUID) -> int:
        return await self._store.revoke_for_subject(subject_kind, subject_id)

    async def describe(self, token_id: UUID) -> TokenDescription:
        description = await self._store.describe(token_id)
        if description is None:
            raise SubjectNotFound("Token not found.")
        return description

    async def audit_active_signatures(self, *, sample_size: int) -> list[UUID]:
        """Re-check recently issued active tokens and revoke those that no longer verify."""

        ring = await self._key_resolver.get()
        signer = build_signer(ring)
        revoked: list[UUID] = []
        for record in await self._store.list_active(limit=sample_size):
            payload = payload_from_record(record)
            if ring.secret_for(payload.key_id) is None:
                reason = "unknown_signing_key"
            elif not signer.tag_matches(payload, b64url_decode(record.tag)):
                reason = "signature_mismatch"
            else:
                continue
            logger.warning(
                "Revoking token that failed integrity check",
                token_id=str(record.id),
                key_id=record.key_id,
                reason=reason,
            )
            await self._store.revoke(record.id, reason)
            revoked.append(record.id)
        return revoked


__all__ = ["IssuedToken", "TokenService", "TokenValidation", "build_signer", "payload_from_record"]
