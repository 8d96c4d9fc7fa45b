import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):

    port: int = 8000
    environment: str = "development"


    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "proctorhub_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432

    # full URL override, e.g. sqlite+aiosqlite:///./proctorhub.db
    database_url: Optional[str] = None

    @property
    def async_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30


    cors_origins_str: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]


    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_enabled: bool = True
    cache_default_ttl: int = 600


    slow_request_threshold: float = 1.0


    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")


    session_stale_after_seconds: int = 3600
    sweep_on_list_reads: bool = True
    background_sweep_enabled: bool = True
    sweep_interval_seconds: int = 300
    # mark closed sessions with a terminal status instead of deleting them
    retain_closed_sessions: bool = False
    signal_event_retention_seconds: int = 600
    violation_limit: int = 3


    default_timezone: str = "UTC"
    timezone_display_format: str = "%d.%m.%Y, %H:%M:%S"


    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
