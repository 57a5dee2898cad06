from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "points-ledger"
    version: str = "0.1.0"
    database_url: str = "sqlite+aiosqlite:///./points_ledger.db"
    database_echo: bool = False

    # Abuse screening: active flags at these severities block new credits
    abuse_blocking_severities: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["high", "critical"]
    )

    @field_validator("abuse_blocking_severities", mode="before")
    @classmethod
    def _parse_severity_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    # Notifications
    ledger_notifications_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None

    # Expiry sweep scheduler
    points_scheduler_enabled: bool = False
    points_schedule_path: str = "config/schedules.toml"
    points_expiry_sweep_limit: int = 500
    points_expiry_warning_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
