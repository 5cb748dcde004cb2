from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = Field(default="dev")  # dev|prod

    # DB
    DATABASE_URL: str = Field(default="postgresql+psycopg://app:app@db:5432/caseload")

    # CORS
    CORS_ORIGINS: str = Field(default="http://localhost:3000,http://localhost")

    # Celery / Redis
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    IMPORT_QUEUE_NAME: str = Field(default="case-imports")
    IMPORT_WORKER_CONCURRENCY: int = Field(default=3, ge=1)
    BROKER_MAX_RETRIES: int = Field(default=5, ge=1)
    BROKER_RETRY_BACKOFF_SECONDS: float = Field(default=0.5, ge=0)

    # Files
    UPLOAD_DIR: str = Field(default="/app/data/uploads")
    IMPORT_MAX_FILE_BYTES: int = Field(default=10 * 1024 * 1024)

    # Import pipeline
    # live writes are opt-in; without this flag every job runs as a dry run
    IMPORT_LIVE_WRITES: bool = Field(default=False)
    IMPORT_JOB_TIMEOUT_SECONDS: float = Field(default=30 * 60)
    IMPORT_CHECKSUM_GUARD_TTL_SECONDS: int = Field(default=6 * 60 * 60)
    IMPORT_CASE_LOCK_TIMEOUT_SECONDS: float = Field(default=30.0)
    # a worker that has not touched its batch for this long is treated as dead
    IMPORT_WORKER_HEARTBEAT_TTL_SECONDS: int = Field(default=300, ge=10)
    IMPORT_ROW_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    IMPORT_ROW_RETRY_BACKOFF_SECONDS: float = Field(default=0.2, ge=0)
    IMPORT_ERROR_SUMMARY_LIMIT: int = Field(default=20, ge=0)
    IMPORT_ERROR_PAGE_SIZE_MAX: int = Field(default=200, ge=1)
    IMPORT_SYSTEM_USER_LOGIN: str = Field(default="system")
    # "CODE=Name,CODE2=Name 2" appended to the built-in case type catalogue
    IMPORT_EXTRA_CASE_TYPES: str = Field(default="")


settings = Settings()
