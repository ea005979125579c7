from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    service_name: str = "vcarda-api"
    log_level: str = "INFO"

    # OpenTelemetry export; spans stay in-process when no collector is set
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_console_export: bool = False

    database_url: str = "sqlite+aiosqlite:///./vcarda.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "vcarda-default"
    reconciliation_task_queue: str = "vcarda-reconciliation"

    # Internal API security (operator tooling)
    internal_api_key: str = ""

    # Token signing
    # Comma separated ``kid:secret`` pairs; the first entry is active unless
    # ``token_active_key_id`` says otherwise. Older kids stay here while tokens
    # signed with them are still in circulation.
    token_signing_keys: str = "local:change-me"
    token_active_key_id: str | None = None
    token_default_ttl_seconds: int = 15 * 60
    token_max_ttl_seconds: int = 24 * 60 * 60
    token_clock_skew_seconds: int = 5 * 60
    token_archive_grace_days: int = 90
    token_archive_batch_size: int = 500
    signing_key_cache_ttl_seconds: int = 300

    @field_validator("token_signing_keys", mode="before")
    @classmethod
    def _strip_signing_keys(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value).strip()

    def signing_key_map(self) -> dict[str, str]:
        """Return the configured signing keys keyed by kid, preserving order."""

        keys: dict[str, str] = {}
        for pair in self.token_signing_keys.split(","):
            kid, sep, secret = pair.strip().partition(":")
            if not sep or not kid.strip() or not secret:
                continue
            keys[kid.strip()] = secret
        return keys

    # Vault configuration for signing key material
    vault_addr: str | None = None
    vault_token: str | None = None
    vault_namespace: str | None = None
    vault_timeout_seconds: float = 5.0
    vault_signing_key_path: str | None = None

    # Upstream customer directory used when provisioning unknown customers
    identity_lookup_url: str | None = None
    identity_lookup_token: str | None = None
    identity_lookup_timeout_seconds: float = 3.0

    # Ledger guards
    default_points_per_scan: int = 10
    default_max_points_per_award: int = 10_000

    # Reconciler
    reconciler_worker_enabled: bool = False
    reconciler_interval_seconds: int = 15 * 60
    reconciler_batch_size: int = 200
    reconciler_repair_enabled: bool = False
    reconciler_token_sample_size: int = 50
    reconciler_trigger_label: str = "scheduler"

    # Notifications
    notification_max_attempts: int = 3
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
