"""Token signing key resolution with Vault and settings fallbacks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Mapping, Protocol, Sequence

import httpx
from loguru import logger

from vcarda_api.core.errors import StoreUnavailable
from vcarda_api.core.settings import settings


class VaultRequestError(RuntimeError):
    """Raised when Vault returns an unexpected response."""


class VaultClientProtocol(Protocol):
    """Protocol describing the subset of Vault client interactions we require."""

    async def read_secret(self, path: str) -> Mapping[str, Any] | None:
        """Retrieve a secret from Vault, returning ``None`` when it is missing."""


class HttpVaultClient(VaultClientProtocol):
    """Minimal Vault client backed by ``httpx`` for KV v2 secret retrieval."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        namespace: str | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        if not base_url:
            raise ValueError("Vault base URL must be configured")
        if not token:
            raise ValueError("Vault token must be configured")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds

    async def read_secret(self, path: str) -> Mapping[str, Any] | None:  # pragma: no cover - thin HTTP wrapper
        url = f"{self._base_url}/v1/{path.lstrip('/')}"
        headers = {"X-Vault-Token": self._token}
        if self._namespace:
            headers["X-Vault-Namespace"] = self._namespace
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise VaultRequestError(f"Vault request for path '{path}' failed") from exc
        if response.status_code == 200:
            return response.json()
        if response.status_code in (204, 404):
            return None
        raise VaultRequestError(
            f"Vault responded with unexpected status {response.status_code} for path '{path}'"
        )


@dataclass(slots=True)
class SigningKeyRing:
    """Secrets keyed by ``kid``. ``active_key_id`` signs new tokens; every kid verifies."""

    keys: Mapping[str, bytes]
    active_key_id: str
    refreshed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.active_key_id not in self.keys:
            raise ValueError(f"Active signing key '{self.active_key_id}' is not in the key ring")

    def secret_for(self, key_id: str) -> bytes | None:
        return self.keys.get(key_id)

    @property
    def active_secret(self) -> bytes:
        return self.keys[self.active_key_id]


def build_key_ring(raw_keys: Mapping[str, str], active_key_id: str | None = None, **kwargs: Any) -> SigningKeyRing | None:
    """Build a ring from ``kid -> secret`` text, defaulting the active kid to the first entry."""

    keys = {str(kid): str(secret).encode("utf-8") for kid, secret in raw_keys.items() if kid and secret}
    if not keys:
        return None
    active = active_key_id or next(iter(keys))
    return SigningKeyRing(keys=keys, active_key_id=active, **kwargs)


class SigningKeySource(Protocol):
    """Protocol for implementations capable of fetching signing key material."""

    async def fetch(self) -> SigningKeyRing | None:
        """Return the current key ring or ``None`` when this source has none."""


class VaultSigningKeySource(SigningKeySource):
    """Read the key ring from a Vault KV v2 secret.

    The secret is expected to carry ``keys`` (a ``kid -> secret`` mapping), an
    optional ``active_key_id`` and an optional ``rotation_expires_at`` hint.
    """

    def __init__(self, client: VaultClientProtocol, *, path: str) -> None:
        self._client = client
        self._path = path

    async def fetch(self) -> SigningKeyRing | None:
        try:
            payload = await self._client.read_secret(self._path)
        except VaultRequestError:
            logger.exception("Vault signing key read failed", path=self._path)
            return None
        if not payload:
            return None

        data = payload.get("data") or {}
        if "data" in data:
            data = data["data"] or {}
        raw_keys = data.get("keys")
        if not isinstance(raw_keys, Mapping) or not raw_keys:
            logger.warning("Vault signing key secret has no keys", path=self._path)
            return None

        expires_at: datetime | None = None
        rotation_hint = data.get("rotation_expires_at")
        if rotation_hint:
            try:
                expires_at = datetime.fromisoformat(rotation_hint)
            except ValueError:
                logger.warning(
                    "Ignoring invalid signing key rotation hint",
                    path=self._path,
                    rotation_expires_at=rotation_hint,
                )
        try:
            return build_key_ring(raw_keys, data.get("active_key_id"), expires_at=expires_at)
        except ValueError:
            logger.warning("Vault signing key secret names an unknown active key", path=self._path)
            return None


class SettingsSigningKeySource(SigningKeySource):
    """Fallback source reading ``token_signing_keys`` from settings."""

    async def fetch(self) -> SigningKeyRing | None:
        return build_key_ring(settings.signing_key_map(), settings.token_active_key_id)


class CompositeSigningKeySource(SigningKeySource):
    """Attempts multiple key sources in sequence until one returns a ring."""

    def __init__(self, sources: Sequence[SigningKeySource]) -> None:
        self._sources = list(sources)

    async def fetch(self) -> SigningKeyRing | None:
        for source in self._sources:
            ring = await source.fetch()
            if ring is not None:
                return ring
        return None


class SigningKeyResolver:
    """Caches the key ring and refreshes it when the TTL or rotation hint lapses."""

    def __init__(self, source: SigningKeySource, *, cache_ttl: timedelta | None = None) -> None:
        self._source = source
        self._cache_ttl = cache_ttl or timedelta(seconds=settings.signing_key_cache_ttl_seconds)
        self._cached: SigningKeyRing | None = None
        self._cached_until: datetime | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, now: datetime) -> bool:
        return self._cached is not None and self._cached_until is not None and now < self._cached_until

    async def get(self) -> SigningKeyRing:
        """Return the current ring, raising :class:`StoreUnavailable` when no source has keys."""

        if self._is_fresh(datetime.now(timezone.utc)):
            return self._cached  # type: ignore[return-value]

        async with self._lock:
            now = datetime.now(timezone.utc)
            if self._is_fresh(now):
                return self._cached  # type: ignore[return-value]

            ring = await self._source.fetch()
            if ring is None:
                self._cached = None
                self._cached_until = None
                logger.error("No token signing keys are configured")
                raise StoreUnavailable()

            cached_until = now + self._cache_ttl
            if ring.expires_at and ring.expires_at < cached_until:
                cached_until = ring.expires_at
            self._cached = ring
            self._cached_until = cached_until
            return ring

    def invalidate(self) -> None:
        self._cached = None
        self._cached_until = None


def build_default_signing_key_source() -> SigningKeySource:
    """Construct the default key source hierarchy."""

    sources: list[SigningKeySource] = []
    if settings.vault_addr and settings.vault_token and settings.vault_signing_key_path:
        client = HttpVaultClient(
            base_url=settings.vault_addr,
            token=settings.vault_token,
            namespace=settings.vault_namespace,
            timeout_seconds=settings.vault_timeout_seconds,
        )
        sources.append(VaultSigningKeySource(client, path=settings.vault_signing_key_path))
    sources.append(SettingsSigningKeySource())
    return CompositeSigningKeySource(sources)


@lru_cache(maxsize=1)
def build_default_signing_key_resolver() -> SigningKeyResolver:
    """Factory that wires the resolver with the configured key sources."""

    return SigningKeyResolver(build_default_signing_key_source())


__all__ = [
    "CompositeSigningKeySource",
    "HttpVaultClient",
    "SettingsSigningKeySource",
    "SigningKeyResolver",
    "SigningKeyRing",
    "SigningKeySource",
    "VaultClientProtocol",
    "VaultRequestError",
    "VaultSigningKeySource",
    "build_default_signing_key_resolver",
    "build_default_signing_key_source",
    "build_key_ring",
]
