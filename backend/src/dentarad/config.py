"""Configuration management for DentaRad.

Uses pydantic-settings to load configuration from environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> Path | None:
    """Search for .env file in common locations."""
    cwd = Path.cwd()
    if (cwd / ".env").exists():
        return cwd / ".env"

    # Check parent directories (up to 5 levels) for project root .env
    check_dir = cwd
    for _ in range(5):
        if (check_dir / ".env").exists():
            return check_dir / ".env"
        parent = check_dir.parent
        if parent == check_dir:
            break
        check_dir = parent

    # backend/src/dentarad/config.py -> project root
    project_root = Path(__file__).resolve().parent.parent.parent.parent
    if (project_root / ".env").exists():
        return project_root / ".env"

    return None


_env_file = _find_env_file()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_env_file) if _env_file else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    environment: Literal["development", "staging", "production"] = "development"
    app_url: str = "http://localhost:5173"

    # =========================
    # API Settings
    # =========================
    api_debug: bool = False
    cors_origins: str = "http://localhost:5173,http://localhost:8080"

    # =========================
    # PostgreSQL
    # =========================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "dentarad"
    postgres_user: str = "dentarad"
    postgres_password: str = Field(default="", repr=False)

    @computed_field
    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL for PostgreSQL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url_sync(self) -> str:
        """Synchronous database URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================
    # Redis
    # =========================
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_backend: Literal["memory", "redis"] = "memory"

    # =========================
    # S3 Storage (Supabase Storage S3 protocol or MinIO locally)
    # =========================
    s3_endpoint: str = "http://localhost:9000"
    s3_access_key: str = Field(default="minioadmin", repr=False)
    s3_secret_key: str = Field(default="minioadmin", repr=False)
    s3_region: str = "us-east-1"
    scans_bucket: str = "cbct-scans"
    reports_bucket: str = "reports"
    downloads_bucket: str = "case-downloads"
    report_images_bucket: str = "report-images"
    invoices_bucket: str = "invoices"

    # =========================
    # Celery
    # =========================
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"

    # =========================
    # Dropbox
    # =========================
    dropbox_app_key: str = Field(default="", repr=False)
    dropbox_app_secret: str = Field(default="", repr=False)
    dropbox_refresh_token: str = Field(default="", repr=False)
    dropbox_access_token: str = Field(default="", repr=False)
    dropbox_cases_root: str = "/DentaRad/Cases"

    # =========================
    # Orthanc PACS
    # =========================
    orthanc_url: str = "http://localhost:8042"
    orthanc_username: str = Field(default="", repr=False)
    orthanc_password: str = Field(default="", repr=False)
    ohif_viewer_url: str = "http://localhost:3000"

    # =========================
    # OpenAI
    # =========================
    openai_api_key: str = Field(default="", repr=False)
    openai_report_model: str = "gpt-4o-mini"
    openai_transcription_model: str = "whisper-1"

    # =========================
    # Stripe
    # =========================
    stripe_webhook_secret: str = Field(default="", repr=False)

    # =========================
    # Resend Email
    # =========================
    resend_api_key: str = Field(default="", repr=False)
    email_from_notifications: str = "DentaRad <notifications@dentarad.com>"
    email_from_invoices: str = "DentaRad <invoices@dentarad.com>"

    # =========================
    # JWT/Auth
    # =========================
    jwt_secret: str = Field(default="change-me-in-production", repr=False)
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = "authenticated"
    jwt_expiration_hours: int = 24

    # =========================
    # Security
    # =========================
    session_timeout_minutes: int = 30
    session_warning_minutes: int = 2
    csrf_token_ttl_minutes: int = 60

    # =========================
    # Uploads
    # =========================
    upload_min_bytes: int = 1024 * 1024
    upload_max_bytes: int = 500 * 1024 * 1024
    uploads_per_clinic_per_hour: int = 20
    uploads_per_user_per_day: int = 20

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
