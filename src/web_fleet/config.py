from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the web-fleet scheduler."""

    model_config = SettingsConfigDict(
        env_file=".env.fleet",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    # Application
    app_host: str = Field(default="0.0.0.0", validation_alias="APP_HOST")
    app_port: int = Field(default=7791, validation_alias="APP_PORT")
    log_buffer_size: int = Field(default=500, validation_alias="LOG_BUFFER_SIZE")

    # Provisioning service (local API of the browser profile manager)
    provider_host: str = Field(default="127.0.0.1", validation_alias="PROVIDER_HOST")
    provider_port: int = Field(default=35000, validation_alias="PROVIDER_PORT")
    provider_api_id: str | None = Field(default=None, validation_alias="PROVIDER_API_ID")
    provider_api_key: str | None = Field(default=None, validation_alias="PROVIDER_API_KEY")
    provider_page_size: int = 100
    request_timeout_seconds: float = 10.0
    start_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 3.0

    # Scheduling
    max_concurrent: int = Field(default=3, ge=1, validation_alias="MAX_CONCURRENT")
    schedule_mode: Literal["per_environment", "per_round"] = Field(
        default="per_environment", validation_alias="SCHEDULE_MODE"
    )
    close_attempts: int = Field(default=3, ge=1)
    close_retry_delay_seconds: float = Field(default=1.5, ge=0.0)
    stop_timeout_seconds: float = Field(default=5.0, ge=0.0)

    # Routines
    routines_dir: Path = Field(default=Path("./routines"), validation_alias="ROUTINES_DIR")
    routine_alias_file: str = "routine-alias.json"
    routine_config: dict[str, Any] = Field(default_factory=dict, validation_alias="ROUTINE_CONFIG")

    # Storage
    base_data_dir: Path = Field(default=Path("./data"), validation_alias="BASE_DATA_DIR")
    runs_dir_name: str = "runs"

    @field_validator("routine_config", mode="before")
    @classmethod
    def _parse_routine_config(cls, value):
        if not value:
            return {}
        if isinstance(value, str):
            parsed = json.loads(value)
            if not isinstance(parsed, dict):
                raise ValueError("ROUTINE_CONFIG must be a JSON object")
            return parsed
        return value

    def ensure_directories(self) -> None:
        """Create known directories up-front so later file writes never fail."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def runs_dir(self) -> Path:
        return (self.base_data_dir / self.runs_dir_name).resolve()

    @property
    def provider_base_url(self) -> str:
        return f"http://{self.provider_host}:{self.provider_port}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    settings = Settings()
    settings.ensure_directories()
    return settings


__all__ = ["Settings", "get_settings"]
