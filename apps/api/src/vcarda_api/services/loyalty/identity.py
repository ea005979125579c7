"""Customer identity lookups used to backfill provisional customers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Protocol
from uuid import UUID

import httpx
from loguru import logger

from vcarda_api.core.settings import settings


@dataclass(slots=True)
class IdentityRecord:
    """Best available profile fields for a customer known upstream."""

    email: str | None = None
    display_name: str | None = None
    phone_number: str | None = None


class IdentityLookup(Protocol):
    async def lookup(self, customer_id: UUID) -> IdentityRecord | None:
        """Return what the upstream directory knows about ``customer_id``."""


class NullIdentityLookup(IdentityLookup):
    """Used when no upstream directory is configured; provisional rows stay minimal."""

    async def lookup(self, customer_id: UUID) -> IdentityRecord | None:
        return None


class StaticIdentityLookup(IdentityLookup):
    def __init__(self, records: Mapping[UUID, IdentityRecord]) -> None:
        self._records = dict(records)

    async def lookup(self, customer_id: UUID) -> IdentityRecord | None:
        return self._records.get(customer_id)


class HttpIdentityLookup(IdentityLookup):
    """Fetch ``GET {base_url}/customers/{id}`` from the upstream directory."""

    def __init__(self, *, base_url: str, token: str | None = None, timeout_seconds: float = 3.0) -> None:
        if not base_url:
            raise ValueError("Identity lookup base URL must be configured")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds

    async def lookup(self, customer_id: UUID) -> IdentityRecord | None:  # pragma: no cover - thin HTTP wrapper
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.get(f"{self._base_url}/customers/{customer_id}", headers=headers)
        except httpx.HTTPError:
            logger.warning("Identity lookup failed", customer_id=str(customer_id))
            return None
        if response.status_code != 200:
            if response.status_code != 404:
                logger.warning(
                    "Identity lookup returned unexpected status",
                    customer_id=str(customer_id),
                    status_code=response.status_code,
                )
            return None

        data = response.json() or {}
        return IdentityRecord(
            email=data.get("email") or None,
            display_name=data.get("name") or data.get("displayName") or None,
            phone_number=data.get("phone") or None,
        )


@lru_cache(maxsize=1)
def build_default_identity_lookup() -> IdentityLookup:
    if settings.identity_lookup_url:
        return HttpIdentityLookup(
            base_url=settings.identity_lookup_url,
            token=settings.identity_lookup_token,
            timeout_seconds=settings.identity_lookup_timeout_seconds,
        )
    return NullIdentityLookup()


__all__ = [
    "HttpIdentityLookup",
    "IdentityLookup",
    "IdentityRecord",
    "NullIdentityLookup",
    "StaticIdentityLookup",
    "build_default_identity_lookup",
]
