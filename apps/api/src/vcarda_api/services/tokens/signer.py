"""HMAC-SHA256 signing and verification of token payloads."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping
from uuid import UUID, uuid4

from vcarda_api.core.errors import InvalidRequest, TokenExpired, TokenMalformed, TokenSignatureInvalid
from vcarda_api.services.tokens.codec import TokenPayload, decode_token, encode_token

NONCE_BYTES = 16


def _epoch_now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


@dataclass(frozen=True, slots=True)
class SignedToken:
    payload: TokenPayload
    tag: bytes
    blob: str


class TokenSigner:
    """Issues and verifies tokens against an in-memory key ring.

    ``keys`` maps key ids to secrets. New tokens are signed with
    ``active_key_id``; verification accepts any kid still present in ``keys``.
    """

    def __init__(
        self,
        keys: Mapping[str, bytes],
        active_key_id: str,
        *,
        default_ttl_seconds: int,
        max_ttl_seconds: int,
        clock_skew_seconds: int = 300,
        clock: Callable[[], int] | None = None,
    ) -> None:
        if active_key_id not in keys:
            raise ValueError(f"Unknown active signing key '{active_key_id}'")
        self._keys = dict(keys)
        self._active_key_id = active_key_id
        self._default_ttl = default_ttl_seconds
        self._max_ttl = max_ttl_seconds
        self._clock_skew = clock_skew_seconds
        self._clock = clock or _epoch_now

    def resolve_ttl(self, ttl_seconds: int | None) -> int:
        if ttl_seconds is None:
            ttl_seconds = self._default_ttl
        if isinstance(ttl_seconds, bool) or ttl_seconds <= 0:
            raise InvalidRequest("Token lifetime must be a positive number of seconds.")
        return min(int(ttl_seconds), self._max_ttl)

    def sign(self, payload: TokenPayload) -> bytes:
        secret = self._keys.get(payload.key_id)
        if secret is None:
            raise TokenSignatureInvalid()
        return hmac.new(secret, payload.signing_input(), hashlib.sha256).digest()

    def issue(
        self,
        subject_kind: str,
        subject_id: UUID,
        *,
        ttl_seconds: int | None = None,
        program_id: UUID | None = None,
    ) -> SignedToken:
        issued_at = self._clock()
        payload = TokenPayload(
            token_id=uuid4(),
            subject_kind=subject_kind,
            subject_id=subject_id,
            program_id=program_id,
            issued_at=issued_at,
            expires_at=issued_at + self.resolve_ttl(ttl_seconds),
            nonce=secrets.token_urlsafe(NONCE_BYTES),
            key_id=self._active_key_id,
        )
        tag = self.sign(payload)
        return SignedToken(payload=payload, tag=tag, blob=encode_token(payload, tag))

    def tag_matches(self, payload: TokenPayload, tag: bytes) -> bool:
        secret = self._keys.get(payload.key_id)
        if secret is None:
            return False
        expected = hmac.new(secret, payload.signing_input(), hashlib.sha256).digest()
        return hmac.compare_digest(expected, tag)

    def verify(self, blob: str) -> TokenPayload:
        """Return the authentic, unexpired payload of ``blob``.

        Raises ``TokenMalformed``, ``TokenSignatureInvalid`` or ``TokenExpired``.
        Single-use state is not checked here.
        """

        decoded = decode_token(blob)
        payload = decoded.payload
        if not self.tag_matches(payload, decoded.tag):
            raise TokenSignatureInvalid()

        now = self._clock()
        if payload.issued_at > now + self._clock_skew:
            raise TokenMalformed(context_field="iat")
        if now >= payload.expires_at:
            raise TokenExpired()
        return payload


__all__ = ["NONCE_BYTES", "SignedToken", "TokenSigner"]
