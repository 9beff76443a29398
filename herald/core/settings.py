from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_seconds_table(raw: str, *, name: str) -> tuple[int, ...]:
    values: list[int] = []
    for part in raw.split(","):
        text = part.strip()
        if not text:
            continue
        try:
            seconds = int(text)
        except ValueError as exc:
            raise ValueError(f"{name} must be a comma-separated list of integers") from exc
        if seconds < 0:
            raise ValueError(f"{name} entries must be non-negative")
        values.append(seconds)
    if not values:
        raise ValueError(f"{name} must contain at least one entry")
    return tuple(values)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    HERALD_ENV: str = "development"
    HERALD_MODE: str = "api"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    SITE_URL: str = "http://localhost:3000"
    SUPABASE_URL: str
    SUPABASE_ANON_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_ISSUER: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    EMAIL_FROM: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    PUSH_GATEWAY_URL: str | None = None
    PUSH_GATEWAY_TOKEN: str | None = None
    NOTIFY_MAX_ATTEMPTS: int = 5
    EVENT_BATCH_LIMIT: int = 50
    EMAIL_BATCH_LIMIT: int = 50
    PUSH_BATCH_LIMIT: int = 100
    IN_APP_BATCH_LIMIT: int = 100
    EVENT_BACKOFF_SECONDS: str = "0,30,120,600,1800"
    EMAIL_BACKOFF_SECONDS: str = "0,30,120,600,1800"
    PUSH_BACKOFF_SECONDS: str = "0,15,60,300,900"
    IN_APP_BACKOFF_SECONDS: str = "0,15,60,300,900"
    EVENT_PROCESSING_LOCK_SECONDS: int = 120
    JOB_PROCESSING_LOCK_SECONDS: int = 300
    EVENT_SWEEP_INTERVAL_SECONDS: int = 120
    DISPATCH_INTERVAL_SECONDS: int = 60
    RUN_TIME_BUDGET_SECONDS: float = 45.0
    WORKER_POLL_INTERVAL_SECONDS: int = 5

    @model_validator(mode="after")
    def apply_supabase_defaults(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_ANON_KEY.strip():
            raise ValueError("SUPABASE_ANON_KEY must be configured")

        if not self.SUPABASE_ISSUER:
            self.SUPABASE_ISSUER = f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"
        if not self.SUPABASE_JWKS_URL:
            self.SUPABASE_JWKS_URL = (
                f"{self.SUPABASE_ISSUER.rstrip('/')}/.well-known/jwks.json"
            )
        if self.HERALD_ENV.strip().lower() == "production":
            if not (self.EMAIL_FROM or "").strip():
                raise ValueError("EMAIL_FROM must be configured in production")

        for name in (
            "EVENT_BACKOFF_SECONDS",
            "EMAIL_BACKOFF_SECONDS",
            "PUSH_BACKOFF_SECONDS",
            "IN_APP_BACKOFF_SECONDS",
        ):
            _parse_seconds_table(getattr(self, name), name=name)
        if self.NOTIFY_MAX_ATTEMPTS < 1:
            raise ValueError("NOTIFY_MAX_ATTEMPTS must be at least 1")
        return self

    @property
    def event_backoff_schedule(self) -> tuple[int, ...]:
        return _parse_seconds_table(self.EVENT_BACKOFF_SECONDS, name="EVENT_BACKOFF_SECONDS")

    def channel_backoff_schedule(self, channel: str) -> tuple[int, ...]:
        raw = {
            "email": self.EMAIL_BACKOFF_SECONDS,
            "push": self.PUSH_BACKOFF_SECONDS,
            "in_app": self.IN_APP_BACKOFF_SECONDS,
        }.get(channel, self.EMAIL_BACKOFF_SECONDS)
        return _parse_seconds_table(raw, name=f"{channel.upper()}_BACKOFF_SECONDS")

    def channel_batch_limit(self, channel: str) -> int:
        return {
            "email": self.EMAIL_BATCH_LIMIT,
            "push": self.PUSH_BATCH_LIMIT,
            "in_app": self.IN_APP_BATCH_LIMIT,
        }.get(channel, self.EMAIL_BATCH_LIMIT)


@lru_cache
def get_settings() -> Settings:
    return Settings()
