from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./payment_recon.db"
    sqlite_busy_timeout_seconds: float = 30.0
    redis_url: str = "redis://localhost:6379/0"

    google_oauth_client_id: str | None = None
    google_oauth_client_secret: str | None = None
    gmail_redirect_uri: str | None = None

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "payment-recon"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    init_admin_email: str | None = None
    init_admin_password: str | None = None

    access_token_exp_minutes: int = 60 * 24

    default_currency: str = "USD"

    # Remote calls made while normalizing evidence.
    mail_http_timeout_seconds: float = 15.0
    ocr_timeout_seconds: float = 30.0
    tesseract_lang: str = "eng"
    ingestion_max_workers: int = 4
    ingestion_max_results: int = 50

    bank_notification_query: str = (
        'newer_than:14d (subject:(credit OR deposit OR "payment received") OR from:(bank))'
    )
    payment_reply_query: str = "newer_than:45d has:attachment in:inbox subject:INV-"
    min_image_attachment_bytes: int = 20_000
    min_pdf_attachment_bytes: int = 5_000
    require_sent_thread: bool = True

    # Celery beat cadence.
    mailbox_poll_minutes: int = 15
    overdue_refresh_hour_utc: int = 1


settings = Settings()
