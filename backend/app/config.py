"""Environment-backed settings for the Car Melde App."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CARMELDE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    database_path: Path = Field(default=Path("car_reports.db"))
    upload_dir: Path = Field(default=Path("uploads"))
    photo_storage: Literal["inline", "local"] = Field(default="local")

    page_size: int = Field(default=20, ge=1)
    history_limit: int = Field(default=20, ge=1)
    report_window_days: int = Field(default=7, ge=0)

    session_expiry_minutes: int = Field(default=12 * 60, ge=1)
    success_message_seconds: int = Field(default=5, ge=0)
    seed_defaults: bool = Field(default=True)

    log_level: str = Field(default="INFO")
    log_dir: Optional[Path] = Field(default=None)

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)


@lru_cache
def get_settings() -> Settings:
    return Settings()
