"""
Configuration management for the Certificate Pipeline.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Certificate Pipeline")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./certificate_pipeline.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    # Artifact storage
    artifact_root_uri: str = Field(
        default="file://./var/certificates",
        description="Base URI for generated documents and uploaded templates (file:// only for now).",
    )

    # Registration numbers
    registration_prefix: str = Field(default="ILC", min_length=1, max_length=8)
    registration_width: int = Field(default=6, ge=1, le=12)
    registration_max_cas_attempts: int = Field(
        default=200,
        ge=1,
        description="Compare-and-swap rounds before one allocation gives up.",
    )
    registration_allocation_attempts: int = Field(
        default=3,
        ge=1,
        description="Allocation calls the pipeline makes before failing the job.",
    )

    # Document conversion (LibreOffice)
    libreoffice_path: Optional[str] = Field(default=None)
    conversion_timeout_seconds: float = Field(default=60.0, gt=0)
    conversion_max_attempts: int = Field(default=3, ge=1)
    conversion_backoff_seconds: float = Field(default=2.0, ge=0)
    conversion_min_bytes: int = Field(default=1024, ge=1)
    converter_concurrency: int = Field(default=2, ge=1)

    # Rendering
    transcript_unit_slots: int = Field(default=25, ge=1)
    unit_overflow_policy: Literal["reject", "truncate"] = Field(default="reject")
    default_unit_credits: int = Field(default=10, ge=0)

    # Worker
    worker_poll_interval: int = Field(default=5, ge=1)
    worker_claim_limit: int = Field(default=5, ge=1)
    worker_concurrency: int = Field(default=4, ge=1)
    worker_lease_seconds: int = Field(
        default=900,
        ge=1,
        description="A row held in 'generating' longer than this is treated as abandoned.",
    )
    max_generation_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: int = Field(default=60, ge=0)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
