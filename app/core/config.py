import logging
import os
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "TraviLink Approvals"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = "secret"
    DATABASE_URL: str = "sqlite+aiosqlite:///./travilink.db"
    BACKEND_CORS_ORIGINS: list[str] = ["*"]
    FRONTEND_URL: str = "http://localhost:8081"
    ENVIRONMENT: str = "development"
    DB_AUTO_INIT_ON_STARTUP: bool | None = None

    # Requests from non-head staff above this amount need presidential sign-off.
    PRESIDENT_BUDGET_THRESHOLD: Decimal = Decimal("15000")
    REQUEST_LOAD_TIMEOUT_SECONDS: float = 10.0
    INBOX_LIMIT: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_database_url_in_production(self):
        if os.environ.get("VERCEL"):
            self.ENVIRONMENT = "production"

        if self.ENVIRONMENT == "production":
            if "sqlite" in self.DATABASE_URL:
                raise ValueError(
                    "Production environment detected but DATABASE_URL is missing or set to SQLite. "
                    "Set DATABASE_URL to the PostgreSQL connection string of the hosted backend."
                )

            # Hosted backends hand out libpq style URLs; the async engine needs asyncpg.
            if self.DATABASE_URL.startswith("postgres://"):
                logger.debug("Rewriting postgres:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
            elif self.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in self.DATABASE_URL:
                logger.debug("Rewriting postgresql:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

        if self.DB_AUTO_INIT_ON_STARTUP is None:
            self.DB_AUTO_INIT_ON_STARTUP = self.ENVIRONMENT != "production"

        return self

settings = Settings()
