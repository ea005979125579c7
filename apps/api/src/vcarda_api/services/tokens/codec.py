"""Wire format for signed tokens.

A token blob is ``base64url(payload) "." base64url(tag)`` where the payload is
compact JSON with sorted keys::

    {"exp": 1700000900, "iat": 1700000000, "id": "...", "kid": "k1",
     "kind": "customer", "nonce": "...", "prg": null, "sub": "...", "v": "2"}

The codec is pure: it never touches key material, clocks, or storage.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from vcarda_api.core.errors import TokenMalformed
from vcarda_api.models.token import TokenSubjectKind

TOKEN_FORMAT_VERSION = "2"
MAX_BLOB_LENGTH = 2048

_SUBJECT_KINDS = {kind.value for kind in TokenSubjectKind}
_REQUIRED_FIELDS = ("v", "id", "kind", "sub", "prg", "iat", "exp", "nonce", "kid")


@dataclass(frozen=True, slots=True)
class TokenPayload:
    token_id: UUID
    subject_kind: str
    subject_id: UUID
    program_id: UUID | None
    issued_at: int
    expires_at: int
    nonce: str
    key_id: str
    version: str = TOKEN_FORMAT_VERSION

    def signing_input(self) -> bytes:
        """Bytes covered by the integrity tag, every field in a fixed order."""

        parts = (
            self.version,
            str(self.token_id),
            self.subject_kind,
            str(self.subject_id),
            str(self.program_id) if self.program_id else "",
            str(self.issued_at),
            str(self.expires_at),
            self.nonce,
            self.key_id,
        )
        return "|".join(parts).encode("utf-8")

    def as_claims(self) -> dict[str, Any]:
        return {
            "v": self.version,
            "id": str(self.token_id),
            "kind": self.subject_kind,
            "sub": str(self.subject_id),
            "prg": str(self.program_id) if self.program_id else None,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "nonce": self.nonce,
            "kid": self.key_id,
        }


@dataclass(frozen=True, slots=True)
class DecodedToken:
    payload: TokenPayload
    tag: bytes


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode("ascii"))


def encode_token(payload: TokenPayload, tag: bytes) -> str:
    body = json.dumps(payload.as_claims(), sort_keys=True, separators=(",", ":"))
    return f"{b64url_encode(body.encode('utf-8'))}.{b64url_encode(tag)}"


def _parse_uuid(value: Any, field_name: str) -> UUID:
    if not isinstance(value, str):
        raise TokenMalformed(context_field=field_name)
    try:
        return UUID(value)
    except ValueError as exc:
        raise TokenMalformed(context_field=field_name) from exc


def _parse_int(value: Any, field_name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise TokenMalformed(context_field=field_name)
    return value


def _parse_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise TokenMalformed(context_field=field_name)
    return value


def decode_token(blob: str) -> DecodedToken:
    """Parse a blob into its payload and tag, raising :class:`TokenMalformed` on any defect."""

    if not isinstance(blob, str) or not blob or len(blob) > MAX_BLOB_LENGTH:
        raise TokenMalformed()
    body_part, sep, tag_part = blob.strip().partition(".")
    if not sep or not body_part or not tag_part or "." in tag_part:
        raise TokenMalformed()

    try:
        body = b64url_decode(body_part)
        tag = b64url_decode(tag_part)
        claims = json.loads(body.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as exc:
        raise TokenMalformed() from exc

    if not isinstance(claims, dict) or any(name not in claims for name in _REQUIRED_FIELDS):
        raise TokenMalformed()
    if not tag:
        raise TokenMalformed()

    version = _parse_text(claims["v"], "v")
    if version != TOKEN_FORMAT_VERSION:
        raise TokenMalformed(context_field="v")
    subject_kind = _parse_text(claims["kind"], "kind")
    if subject_kind not in _SUBJECT_KINDS:
        raise TokenMalformed(context_field="kind")

    program_id = None if claims["prg"] is None else _parse_uuid(claims["prg"], "prg")
    issued_at = _parse_int(claims["iat"], "iat")
    expires_at = _parse_int(claims["exp"], "exp")
    if expires_at <= issued_at:
        raise TokenMalformed(context_field="exp")

    payload = TokenPayload(
        token_id=_parse_uuid(claims["id"], "id"),
        subject_kind=subject_kind,
        subject_id=_parse_uuid(claims["sub"], "sub"),
        program_id=program_id,
        issued_at=issued_at,
        expires_at=expires_at,
        nonce=_parse_text(claims["nonce"], "nonce"),
        key_id=_parse_text(claims["kid"], "kid"),
        version=version,
    )
    return DecodedToken(payload=payload, tag=tag)


__all__ = [
    "DecodedToken",
    "MAX_BLOB_LENGTH",
    "TOKEN_FORMAT_VERSION",
    "TokenPayload",
    "b64url_decode",
    "b64url_encode",
    "decode_token",
    "encode_token",
]
