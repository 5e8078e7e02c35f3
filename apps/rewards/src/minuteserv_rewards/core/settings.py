from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "minuteserv-rewards"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    log_json: bool = True

    database_url: str = "sqlite+aiosqlite:///./minuteserv_rewards.db"
    database_echo: bool = False
    # Upper bound for a single statement; ledger calls never block indefinitely.
    database_command_timeout_seconds: float = 15.0
    database_pool_timeout_seconds: float = 10.0

    # Loyalty points
    loyalty_redemption_rate: Decimal = Decimal("0.1")
    loyalty_min_redeem_points: int = 100
    loyalty_redeem_step_points: int = 100
    loyalty_default_tier: str = "bronze"
    loyalty_history_max_page_size: int = 100

    # Vouchers
    voucher_code_prefix: str = "LOYALTY"
    voucher_code_digits: int = 6
    voucher_code_max_attempts: int = 5
    voucher_ttl_days: int = 30

    # Promotions
    currency_symbol: str = "₹"
    promo_reconciliation_enabled: bool = True
    promo_booking_history_source: Literal["bookings_table", "ledger"] = "bookings_table"
    promo_bookings_table: str = "bookings"
    promo_completed_booking_statuses: list[str] = Field(default_factory=lambda: ["completed", "confirmed"])

    @field_validator("promo_completed_booking_statuses", mode="before")
    @classmethod
    def _parse_status_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Job scheduler
    job_scheduler_enabled: bool = True
    job_schedule_path: str = "config/schedules.toml"

    @field_validator("voucher_code_max_attempts", "voucher_code_digits")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
