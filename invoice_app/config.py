from functools import lru_cache
from typing import List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = Field(default="Invoice Lifecycle Service")
    cors_origins: List[AnyHttpUrl] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    log_level: str = Field(default="INFO")

    frontend_id_prefix: str = Field(default="INV", min_length=1)
    frontend_id_width: int = Field(default=5, ge=1, le=12)
    id_cache_refresh_interval: float = Field(
        default=3600.0, gt=0
    )

    recurring_generation_enabled: bool = Field(default=True)
    recurring_generation_interval: float = Field(
        default=86400.0, gt=0
    )
    operator_user_ids: List[str] = Field(default_factory=list)

    default_page_size: int = Field(default=10, ge=1)
    max_page_size: int = Field(default=50, ge=1)

    model_config = SettingsConfigDict(env_prefix="INVOICE_APP_", case_sensitive=False)

    @field_validator("cors_origins", "operator_user_ids", mode="before")
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level", mode="before")
    def _normalize_level(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
