from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVEL_PATTERN = r"^(?i:DEBUG|INFO|WARNING|ERROR|CRITICAL)$"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PROBEHUB_",
        case_sensitive=False,
    )

    env: str = Field(default="development")
    debug: bool = Field(default=False)
    docs_enabled: bool = Field(default=True)

    log_level: str = Field(default="INFO", pattern=LOG_LEVEL_PATTERN)
    log_json: bool = Field(default=False)

    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"])

    poll_interval_seconds: float = Field(default=300.0, gt=0, le=24 * 60 * 60)
    fetch_timeout_seconds: float = Field(default=10.0, ge=0.1, le=120.0)
    max_history_readings: int = Field(default=100, ge=1, le=100_000)
    subscriber_queue_size: int = Field(default=256, ge=1, le=100_000)

    data_dir: Path = Field(default=Path("data"))
    devices_file: Path | None = Field(default=None)
    autostart_polling: bool = Field(default=False)

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


def load_settings() -> Settings:
    settings = Settings()
    if not settings.cors_origins:
        settings.cors_origins = ["http://localhost:3000", "http://localhost:8000"]
    return settings
