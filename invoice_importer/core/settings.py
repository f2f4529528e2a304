"""Configuration and environment settings for the Invoice Importer."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Invoice Importer."""

    database_url: str = "sqlite:///invoice_imports.db"
    upload_directory: str = "uploads"
    storage_backend: str = "local"
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_BUCKET: str = "invoice-imports"
    manual_review_threshold: float = 0.7
    default_due_date_days: int = 30
    worker_max_workers: int = 4
    worker_queue_capacity: int = 100
    parse_timeout_seconds: float = 60.0
    stale_processing_seconds: float = 900.0
    log_directory: str = "logs"
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
