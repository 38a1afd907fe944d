from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VECTOR_SYNC_MODES = ("inline", "deferred")


class AppSettings(BaseSettings):
    """Environment-driven application configuration."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    APP_NAME: str = "Item Archive"
    APP_ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    DATA_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parents[2] / "data")

    DB_URL: str | None = Field(default=None, validation_alias=AliasChoices("DB_URL", "DATABASE_URL"))
    VECTOR_DB_URL: str | None = None
    AUTO_CREATE_SCHEMA: bool = True
    METRICS_ENABLED: bool = True

    API_KEY: str = Field(default="", validation_alias=AliasChoices("API_KEY", "API_TOKEN"))

    # ---- archive
    ARCHIVE_TX_TIMEOUT_SEC: float = Field(default=60.0, gt=0)
    ARCHIVE_MAX_BATCH: int = Field(default=1000, gt=0)
    QUERY_CHUNK_SIZE: int = Field(default=500, gt=0)

    # ---- vector sync
    VECTOR_SYNC_MODE: str = "inline"
    VECTOR_SYNC_BATCH_SIZE: int = Field(default=200, gt=0)
    VECTOR_SYNC_MAX_RETRIES: int = Field(default=3, ge=0)
    VECTOR_SYNC_BASE_DELAY: float = Field(default=0.5, ge=0)
    VECTOR_SYNC_MAX_DELAY: float = Field(default=10.0, ge=0)
    VECTOR_SYNC_MAX_ATTEMPTS: int = Field(default=5, gt=0)
    VECTOR_DIMENSION: int | None = Field(default=None, gt=0)

    WORKER_POLL_INTERVAL_SEC: float = Field(default=5.0, gt=0)

    @field_validator("VECTOR_SYNC_MODE", mode="before")
    @classmethod
    def parse_sync_mode(cls, value: object) -> str:
        mode = str(value or "").strip().lower()
        if mode not in VECTOR_SYNC_MODES:
            raise ValueError(f"VECTOR_SYNC_MODE must be one of {', '.join(VECTOR_SYNC_MODES)}")
        return mode

    @model_validator(mode="after")
    def default_db_urls(self) -> "AppSettings":
        if not self.DB_URL:
            self.DB_URL = f"sqlite:///{self.DATA_DIR / 'items.db'}"
        return self

    @property
    def vector_db_url(self) -> str:
        return self.VECTOR_DB_URL or self.DB_URL

    @property
    def deferred_vector_sync(self) -> bool:
        return self.VECTOR_SYNC_MODE == "deferred"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    settings = AppSettings()
    if settings.DB_URL.startswith("sqlite:///") and ":memory:" not in settings.DB_URL:
        settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return settings


settings = get_settings()
