"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine.url import URL, make_url


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # so DB_HOST works regardless of case
        extra="ignore",
    )

    # Database fields (read from .env)
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "field_booking"
    db_user: str = "postgres"
    db_password: str = "postgres"
    database_url_override: str | None = None  # DATABASE_URL_OVERRIDE, e.g. sqlite+aiosqlite for tests

    # Construct database URL dynamically
    @property
    def database_url(self) -> URL:
        if self.database_url_override:
            return make_url(self.database_url_override)
        return URL.create(
            drivername="postgresql+asyncpg",
            username=self.db_user,
            password=self.db_password,
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
        )

    # ServiceM8 (the field-service directory)
    servicem8_base_url: str = "https://api.servicem8.com/api_1.0"
    servicem8_sms_base_url: str = "https://api.servicem8.com"
    servicem8_api_key: str = ""
    servicem8_access_token: str = ""  # issued by the OAuth collaborator
    servicem8_timeout_seconds: float = 30.0

    # Booking defaults
    business_tz: str = "Australia/Brisbane"
    business_name: str = "Field Services"
    default_staff_id: str | None = None
    default_queue_id: str | None = None

    # Capacity engine ("scheduling v2"); legacy per-window counters when off
    scheduling_v2: bool = False
    scheduling_v2_max_jobs_per_window: int = 2
    scheduling_v2_default_duration_minutes: int = 120
    scheduling_v2_buffer_ratio: float = 0.2

    # Idempotency ledger
    idempotency_wait_seconds: float = 5.0
    idempotency_poll_seconds: float = 0.25
    idempotency_stale_seconds: float = 120.0

    # Allocation window map cache: "database" (shared) | "memory" (single instance)
    window_map_cache: str = "database"
    window_map_ttl_seconds: float = 3600.0

    # Overrun monitor
    overrun_protection_enabled: bool = False
    overrun_grace_minutes: int = 15
    overrun_major_delay_minutes: int = 90
    dispatcher_mobile: str | None = None

    # App
    log_level: str = "INFO"
    debug_ring_size: int = 50


settings = Settings()
