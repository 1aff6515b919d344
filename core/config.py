"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # API (webhook receiver)
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # HTTP transport
    HTTP_TIMEOUT_SECONDS: float = 30.0
    MAX_RETRIES: int = 3
    RETRY_BACKOFF_MS: int = 1000
    RETRY_MAX_BACKOFF_MS: int = 30000

    # Auth
    OAUTH_REFRESH_BUFFER_SECONDS: int = 300
    OAUTH_TOKEN_URL: Optional[str] = None
    OAUTH_CLIENT_ID: Optional[str] = None
    OAUTH_CLIENT_SECRET: Optional[str] = None
    OAUTH_SCOPES: str = ""

    # Webhooks
    WEBHOOK_SIGNATURE_HEADER: str = "X-Webhook-Signature"
    WEBHOOK_SIGNATURE_ALGORITHM: str = "sha256"
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_ENDPOINT: str = "default"

    # File watcher
    FILE_WATCH_POLL_INTERVAL_SECONDS: float = 5.0

    # Scheduler
    SCHEDULER_TIMEZONE: str = "UTC"

    # Ingestion boundary
    INGEST_BASE_URL: str = "http://localhost:3000"
    INGEST_API_TOKEN: Optional[str] = None

    # Sample REST sync job (scripts/run_sync.py)
    SYNC_SOURCE_NAME: str = "rest-api"
    SYNC_BASE_URL: Optional[str] = None
    SYNC_ENDPOINT: str = "/items"
    SYNC_API_KEY: Optional[str] = None
    SYNC_SCHEDULE: str = "*/30 * * * *"
    SYNC_PAGINATION_STYLE: str = "cursor"
    SYNC_PAGE_SIZE: int = 100
    SYNC_DATA_PATH: str = "data"
    SYNC_TIMESTAMP_FIELD: Optional[str] = "updated_at"
    SYNC_ID_FIELD: str = "id"
    CHECKPOINT_FILE: str = ".sync_state.json"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
