"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./db/database.db"

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CRM (Bitrix24 inbound webhook, already decrypted by the deployment)
    CRM_WEBHOOK_URL: str = ""
    CRM_PAGE_SIZE: int = 50
    CRM_TIMEOUT: float = 60.0

    # Remote deal user fields
    DEAL_ASSIGNEE_FIELD: str = "UF_CRM_1728999528"
    DEAL_APPROVAL_FIELD: str = "UF_CRM_1730790163295"

    # Department ids granting role capabilities
    INSTALLATION_DEPARTMENT_ID: int = 27
    WAREHOUSE_DEPARTMENT_ID: int = 45


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
