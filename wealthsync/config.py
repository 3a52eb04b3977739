"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings

# ===========================================
# Product Branding
# ===========================================
PRODUCT_NAME = "WealthSync"
PRODUCT_TAGLINE = "Your net worth, kept in step with your brokers."
PRODUCT_VERSION = "1.0.0"
PRODUCT_DESCRIPTION = "Track accounts by hand or sync them from Nordnet and Saxo."


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./wealthsync.db"

    # API server
    host: str = "0.0.0.0"
    port: int = Field(8000, ge=1, le=65535)

    # Logging
    log_level: str = "INFO"

    # Default user (for single-user mode)
    default_user_email: str = "user@localhost"

    # API Security
    api_key: str = ""  # Set in .env for production

    # Credential encryption (must be at least 32 characters)
    encryption_secret: str = "change-me-in-production-32chars!"

    # Broker HTTP
    http_timeout_seconds: float = 30.0
    nordnet_min_request_interval: float = 1.0
    nordnet_throttle_backoff: float = 10.0
    saxo_min_request_interval: float = 0.2
    saxo_throttle_backoff: float = 10.0

    # MitID helper (Nordnet QR login)
    mitid_script_dir: str = "./scripts/mitid"
    mitid_python: str = "python3"
    mitid_work_dir: str = "./tmp"
    mitid_timeout_seconds: float = 120.0
    mitid_artifact_grace_seconds: float = 5.0

    # Saxo OAuth
    saxo_simulation: bool = False
    saxo_redirect_uri: str = "http://localhost:8000/api/brokers/saxo/callback"
    oauth_timeout_seconds: float = 300.0
    oauth_pending_timeout_seconds: float = 90.0

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
