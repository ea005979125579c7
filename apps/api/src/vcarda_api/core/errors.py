"""Error taxonomy shared by the token and ledger services.

Every failure surfaced to callers is a :class:`LoyaltyCoreError` subclass with a
stable ``kind`` and a message that is safe to show to end users. Raw driver or
database text never ends up in ``message``.
"""

from __future__ import annotations

from typing import Any

CODE_NO_LONGER_USABLE = "This code can no longer be used."


class LoyaltyCoreError(Exception):
    """Base class for failures of the loyalty transactional core."""

    kind: str = "InternalError"
    default_message: str = "The request could not be completed."
    retryable: bool = False

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def as_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class TokenInvalid(LoyaltyCoreError):
    """Any reason a presented token cannot be honoured."""

    kind = "TokenInvalid"
    default_message = CODE_NO_LONGER_USABLE


class TokenMalformed(TokenInvalid):
    kind = "TokenMalformed"
    default_message = "This code could not be read."


class TokenSignatureInvalid(TokenInvalid):
    kind = "TokenSignatureInvalid"
    default_message = "This code is not valid."


class TokenExpired(TokenInvalid):
    kind = "TokenExpired"


class TokenAlreadyConsumed(TokenInvalid):
    kind = "TokenAlreadyConsumed"


class TokenRevoked(TokenInvalid):
    kind = "TokenRevoked"


class SubjectNotFound(LoyaltyCoreError):
    """The token or request referenced a customer, card or program that is gone."""

    kind = "SubjectNotFound"
    default_message = "The customer or card for this request no longer exists."


class InsufficientBalance(LoyaltyCoreError):
    kind = "InsufficientBalance"

    def __init__(self, *, balance: int, requested: int) -> None:
        self.balance = balance
        self.requested = requested
        self.shortfall = requested - balance
        super().__init__(
            f"Insufficient points: {self.shortfall} more point"
            f"{'' if self.shortfall == 1 else 's'} required.",
            balance=balance,
            requested=requested,
        )

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload["shortfall"] = self.shortfall
        return payload


class ConflictRetryable(LoyaltyCoreError):
    """Transient uniqueness violation; resolved internally by a re-read."""

    kind = "ConflictRetryable"


class StoreUnavailable(LoyaltyCoreError):
    """The token or ledger store could not be reached; the only kind callers may retry."""

    kind = "StoreUnavailable"
    default_message = "The service is temporarily unavailable. Please retry."
    retryable = True


class PermissionDenied(LoyaltyCoreError):
    kind = "PermissionDenied"
    default_message = "You are not allowed to perform this action."


class InvalidRequest(LoyaltyCoreError):
    kind = "InvalidRequest"
    default_message = "The request is invalid."


__all__ = [
    "CODE_NO_LONGER_USABLE",
    "ConflictRetryable",
    "InsufficientBalance",
    "InvalidRequest",
    "LoyaltyCoreError",
    "PermissionDenied",
    "StoreUnavailable",
    "SubjectNotFound",
    "TokenAlreadyConsumed",
    "TokenExpired",
    "TokenInvalid",
    "TokenMalformed",
    "TokenRevoked",
    "TokenSignatureInvalid",
]
