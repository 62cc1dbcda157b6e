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
    """CRM sync settings loaded from environment variables and .env file.

    Per-organization credentials are never read from here; the caller hands
    them to the client factory. These values are app-level defaults only.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Salesforce connected app
    SALESFORCE_CLIENT_ID: str = ""
    SALESFORCE_CLIENT_SECRET: str = ""
    SALESFORCE_REDIRECT_URI: str = ""
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_REQUESTS_PER_SECOND: float = 100.0
    SALESFORCE_BATCH_SIZE: int = 200

    # HubSpot public app
    HUBSPOT_CLIENT_ID: str = ""
    HUBSPOT_CLIENT_SECRET: str = ""
    HUBSPOT_REDIRECT_URI: str = ""
    HUBSPOT_REQUESTS_PER_SECOND: float = 100.0
    HUBSPOT_BATCH_SIZE: int = 100

    # Pipedrive (static API token, used by scripts only)
    PIPEDRIVE_API_TOKEN: str = ""
    PIPEDRIVE_BASE_URL: str = "https://api.pipedrive.com/api/v1"
    PIPEDRIVE_REQUESTS_PER_SECOND: float = 20.0
    PIPEDRIVE_BATCH_SIZE: int = 100

    # HTTP
    CRM_HTTP_TIMEOUT: float = 30.0
    CRM_TOKEN_REFRESH_SKEW_SECONDS: int = 60

    # Retry with exponential backoff
    CRM_RETRY_MAX_ATTEMPTS: int = 3
    CRM_RETRY_INITIAL_DELAY: float = 1.0
    CRM_RETRY_MULTIPLIER: float = 2.0
    CRM_RETRY_MAX_DELAY: float = 10.0


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
