"""Environment-driven settings for droproom."""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidRequest

# purpose: resolve deployment policy (room expiry, quotas, sweep cadence) from the environment
# inputs: process environment variables, optional .env file
# outputs: immutable Settings snapshot
# status: pilot


def _parse_hours(raw: str) -> tuple[int, ...]:
    return tuple(sorted({int(part) for part in raw.split(",") if part.strip()}))


class Settings(BaseSettings):
    database_url: str = "sqlite:///./droproom.db"
    upload_dir: str = "uploaded_files"
    minio_endpoint: str = ""
    minio_access_key: str | None = None
    minio_secret_key: str | None = None
    minio_bucket: str = "uploads"
    room_code_length: int = Field(default=8, ge=8)
    room_ttl_choices_hours: str = "1,24,168"
    room_default_ttl_hours: int = Field(default=168, ge=1)
    max_items_per_room: int = Field(default=1000, ge=1)
    max_file_size: int = Field(default=50 * 1024 * 1024, ge=1)
    max_text_length: int = Field(default=1_000_000, ge=1)
    room_sweep_batch_size: int = Field(default=100, ge=1)
    room_sweep_pause_seconds: float = Field(default=0.0, ge=0)
    orphan_grace_seconds: int = Field(default=3600, ge=0)
    cors_origins: str = "http://localhost:5173"
    testing: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("minio_endpoint")
    @classmethod
    def _strip_endpoint(cls, value: str) -> str:
        return value.strip()

    @field_validator("room_ttl_choices_hours")
    @classmethod
    def _check_ttl_choices(cls, value: str) -> str:
        try:
            hours = _parse_hours(value)
        except ValueError:
            raise ValueError(f"ROOM_TTL_CHOICES_HOURS must be a comma separated list of hours, got {value!r}")
        if not hours or any(hour <= 0 for hour in hours):
            raise ValueError("ROOM_TTL_CHOICES_HOURS must list positive hour counts")
        return value

    @model_validator(mode="after")
    def _default_ttl_is_a_choice(self) -> "Settings":
        if self.room_default_ttl_hours not in self.ttl_choices_hours:
            raise ValueError("ROOM_DEFAULT_TTL_HOURS must be one of ROOM_TTL_CHOICES_HOURS")
        return self

    @property
    def ttl_choices_hours(self) -> tuple[int, ...]:
        return _parse_hours(self.room_ttl_choices_hours)

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def minio_configured(self) -> bool:
        return bool(self.minio_endpoint and self.minio_access_key and self.minio_secret_key)

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(hours=self.room_default_ttl_hours)

    def resolve_ttl(self, hours: int | None) -> timedelta:
        """Return the expiry window for a requested duration, enforcing the allowed set."""

        if hours is None:
            return self.default_ttl
        choices = self.ttl_choices_hours
        if hours not in choices:
            allowed = ", ".join(str(value) for value in choices)
            raise InvalidRequest(f"Expiry must be one of {allowed} hours")
        return timedelta(hours=hours)


def get_settings() -> Settings:
    """Read settings from the environment; called per use so overrides apply immediately."""

    return Settings()
