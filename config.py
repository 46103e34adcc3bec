"""
Configuration management.

Settings come from environment variables or a local ``.env`` file and are
validated by pydantic-settings. ``get_settings()`` caches one instance for the
process lifetime.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("sqlite", "memory")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(default=False)

    # ==================== STORAGE ====================
    DB_NAME: str = Field(default="contacts.db", description="SQLite database path")
    STORE_BACKEND: str = Field(default="sqlite", description="sqlite or memory")

    # ==================== OBSERVABILITY ====================
    LOG_LEVEL: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")

    # ==================== API ====================
    CORS_ORIGINS: str = Field(default="*", description="Comma-separated list of allowed origins")
    API_TITLE: str = Field(default="Bitespeed Contact Reconciliation API")
    API_VERSION: str = Field(default="1.0.0")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def validate_config(self) -> List[str]:
        """Return a list of configuration problems, empty when valid."""
        errors = []
        if self.STORE_BACKEND not in STORE_BACKENDS:
            errors.append(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}")
        if not 1 <= self.PORT <= 65535:
            errors.append("PORT must be between 1 and 65535")
        if self.is_production:
            if self.CORS_ORIGINS.strip() == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")
            if self.STORE_BACKEND == "memory":
                errors.append("STORE_BACKEND=memory loses all contacts on restart")
        return errors


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Store backend: {settings.STORE_BACKEND}")
    return settings
