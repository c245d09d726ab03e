from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SERVICE_NAME: str = "shipments-service"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    RUN_MIGRATIONS: bool = True

    # Database; DATABASE_URL wins over the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "eci"
    POSTGRES_USER: str = "eci"
    POSTGRES_PASSWORD: str = "eci"

    # Auth
    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    ADMIN_ROLE: str = "admin"
    CRON_SECRET: Optional[str] = None

    # Rate limiting
    REDIS_URL: Optional[str] = None
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMITS: Dict[str, int] = {
        "booking": 5,
        "quality_check": 3,
        "package": 3,
        "approve_dispatch": 3,
        "receive": 3,
        "cancel": 3,
        "dispatch": 3,
    }
    DEFAULT_RATE_LIMIT: int = 5

    # Carrier (domestic leg)
    CARRIER_ADAPTER: str = "fake"  # fake | http
    CARRIER_BASE_URL: Optional[str] = None
    CARRIER_EMAIL: Optional[str] = None
    CARRIER_PASSWORD: Optional[str] = None
    CARRIER_TOKEN: Optional[str] = None
    CARRIER_TIMEOUT_SECONDS: float = 10.0
    CARRIER_MAX_RETRIES: int = 3
    CARRIER_RETRY_BACKOFF_SECONDS: float = 1.0

    # Notifications
    NOTIFICATION_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    INVOICE_STATUSES: List[str] = ["BOOKED", "DELIVERED"]

    # Workers
    SYNC_CONCURRENCY: int = 4
    STUCK_THRESHOLD_HOURS: int = 48
    SCHEDULER_ENABLED: bool = False
    CARRIER_SYNC_INTERVAL_SECONDS: int = 900
    SIMULATION_INTERVAL_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def rate_limit_for(self, action_kind: str) -> int:
        return self.RATE_LIMITS.get(action_kind, self.DEFAULT_RATE_LIMIT)


@lru_cache
def get_settings() -> Settings:
    return Settings()
