from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
import os
from urllib.parse import quote_plus
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def running_in_container() -> bool:
    """Best-effort detection of a containerised runtime (docker/compose)."""
    if os.getenv("RUNNING_IN_CONTAINER", "").strip().lower() == "true":
        return True
    return os.path.exists("/.dockerenv")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment Configuration
    ENVIRONMENT: Environment = Environment.DEVELOPMENT

    # Project Information
    PROJECT_NAME: str = "Stronghold Notifications"
    VERSION: str = "0.1.0"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Database - membership application store (read) + dispatch ledger (write)
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "stronghold"
    SQLALCHEMY_DATABASE_URI: Optional[str] = None

    # Timezone used to compute the scanners' "today"
    DEFAULT_TIMEZONE: str = "UTC"

    # Metrics
    METRICS_ENABLED: bool = True

    @model_validator(mode="after")
    def _derive_database_uri(self) -> "Settings":
        if not self.SQLALCHEMY_DATABASE_URI:
            safe_user = quote_plus(self.POSTGRES_USER)
            server = f"{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            if self.POSTGRES_PASSWORD:
                safe_password = quote_plus(self.POSTGRES_PASSWORD)
                self.SQLALCHEMY_DATABASE_URI = f"postgresql://{safe_user}:{safe_password}@{server}"
            else:
                self.SQLALCHEMY_DATABASE_URI = f"postgresql://{safe_user}@{server}"
        return self


def get_settings() -> Settings:
    # Inside a container the environment is authoritative; .env is for local runs
    if running_in_container():
        return Settings(_env_file=None)
    return Settings()


settings = get_settings()
