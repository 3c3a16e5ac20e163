"""Application configuration and settings management."""

from typing import Any, Literal, Optional

import json
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="FIELDOPS_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Field Engineer Dispatch API"
    api_prefix: str = "/api"
    log_level: str = Field(default="INFO", description="Root log level for the service.")

    backend_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the dispatch backend REST API (e.g., https://localhost:7126/api).",
    )
    backend_timeout_seconds: float = Field(default=15.0, gt=0.0)

    directions_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the directions provider (e.g., https://api.mapbox.com/directions/v5/mapbox).",
    )
    directions_profile: Literal["driving", "driving-traffic", "walking", "cycling"] = Field(
        default="driving",
        description="Travel mode used when requesting directions.",
    )
    directions_access_token: Optional[str] = Field(
        default=None,
        description="Access token appended to directions requests when the provider requires one.",
    )
    directions_timeout_seconds: float = Field(default=10.0, gt=0.0)
    directions_max_retries: int = Field(default=2, ge=0)
    directions_backoff_seconds: float = Field(default=0.5, ge=0.0)

    base_fare: float = Field(default=45.0, ge=0.0)
    rate_per_km: float = Field(default=15.0, ge=0.0)
    currency_symbol: str = Field(default="₱")
    display_timezone: Optional[str] = Field(
        default=None,
        description="IANA zone for arrival times shown to operators (e.g., Asia/Manila). Host local time when unset.",
    )

    initial_radius_km: float = Field(default=1.0, ge=0.0)
    radius_step_km: float = Field(default=1.0, ge=0.0)
    radius_step_seconds: float = Field(default=60.0, gt=0.0)
    max_radius_km: float = Field(default=10.0, ge=0.0)
    request_expiry_minutes: Optional[float] = Field(
        default=None,
        description="Expire pending requests older than this many minutes. Disabled when unset.",
    )

    reenrich_threshold_km: float = Field(
        default=0.05,
        ge=0.0,
        description="Engineer movement that triggers a fresh directions lookup for an active route.",
    )
    rollback_failed_accepts: bool = Field(
        default=True,
        description="Revert the optimistic accept when the backend rejects or fails the command.",
    )

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()

    @field_validator("display_timezone", mode="after")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value.strip()

    @field_validator("backend_base_url", "directions_base_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.rstrip("/") or None


settings = Settings()
