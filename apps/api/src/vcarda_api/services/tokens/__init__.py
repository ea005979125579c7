"""Signed single-use token services."""

from .service import IssuedToken, TokenService, TokenValidation
from .signer import SignedToken, TokenSigner
from .store import ConsumeOutcome, TokenDescription, TokenStore

__all__ = [
    "ConsumeOutcome",
    "IssuedToken",
    "SignedToken",
    "TokenDescription",
    "TokenService",
    "TokenSigner",
    "TokenStore",
    "TokenValidation",
]
