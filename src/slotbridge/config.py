"""Configuration for the slotbridge booking service."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EVENT_KEYWORDS = (
    "event",
    "class",
    "workshop",
    "seminar",
    "course",
    "webinar",
    "retreat",
    "lecture",
)


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    simplybook_url: str = "https://user-api.simplybook.me"
    simplybook_company_login: str = ""
    simplybook_api_key: SecretStr = SecretStr("")
    simplybook_secret_key: SecretStr = SecretStr("")
    rpc_timeout_seconds: float = 15.0
    # Provider tokens live for an hour; refresh well before that.
    token_ttl_seconds: int = 50 * 60
    services_cache_ttl_seconds: int = 5 * 60
    availability_window_days: int = 14
    public_event_horizon_days: int = 365

    mollie_api_url: str = "https://api.mollie.com/v2"
    mollie_api_key: SecretStr = SecretStr("")
    payment_currency: str = "EUR"
    public_base_url: str = "http://localhost:8000"
    payment_redirect_url: str = "http://localhost:9292/pages/booking-success"

    cache_admin_secret: SecretStr = SecretStr("")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:9292"])
    environment: str = "development"
    sentry_dsn: str | None = None
    log_level: str = "INFO"

    event_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_EVENT_KEYWORDS))
    kind_overrides: dict[str, str] = Field(default_factory=dict)
    default_additional_fields: dict[str, str] = Field(default_factory=dict)

    model_config = SettingsConfigDict(env_prefix="SLOTBRIDGE_", env_file=".env")

    @field_validator("simplybook_url", "mollie_api_url", "public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("kind_overrides")
    @classmethod
    def _validate_kind_overrides(cls, value: dict[str, str]) -> dict[str, str]:
        cleaned: dict[str, str] = {}
        for item_id, kind in value.items():
            normalized = str(kind).strip().lower()
            if normalized not in {"service", "event"}:
                raise ValueError(f"kind override for {item_id!r} must be 'service' or 'event'")
            cleaned[str(item_id)] = normalized
        return cleaned

    @field_validator("availability_window_days", "token_ttl_seconds", "services_cache_ttl_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @property
    def payment_webhook_url(self) -> str:
        return f"{self.public_base_url}/webhooks/payment"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
