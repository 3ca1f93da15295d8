# src/calwatch/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        # allow reading secrets directly from files in this directory
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google Calendar API Configuration
    google_api_base_url: str = Field(
        default="https://www.googleapis.com/calendar/v3/",
        description="Base URL of the Calendar v3 API"
    )
    google_token_file: Optional[Path] = Field(
        default=None,
        description="Authorized-user token JSON (defaults to data_dir/credentials/google_token.json)"
    )
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )

    # Application Configuration
    app_name: str = Field(default="calwatch", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calwatch",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Performance Configuration
    max_concurrent_requests: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent HTTP connections"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP request timeout"
    )
    page_size: int = Field(
        default=250,
        ge=1,
        le=2500,
        description="maxResults sent with listing requests"
    )

    # Push channel Configuration
    webhook_address: Optional[str] = Field(
        default=None,
        description="Public HTTPS address Google delivers notifications to"
    )
    channel_ttl_seconds: Optional[int] = Field(
        default=None,
        ge=1,
        description="Requested channel lifetime; Google applies its own maximum"
    )
    enable_channel_renewal: bool = Field(
        default=True,
        description="Renew channels from the server's background loop"
    )
    channel_renew_interval_mins: int = Field(
        default=60,
        ge=1,
        description="How often the renewal loop runs"
    )
    channel_renew_before_mins: int = Field(
        default=1440,
        ge=0,
        description="Renew channels expiring within this many minutes"
    )
    classify_with_seen_ids: bool = Field(
        default=False,
        description="Classify created/updated by remembering delivered event IDs instead of timestamps"
    )

    @validator('data_dir', 'google_token_file', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calwatch.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('webhook_address')
    def validate_webhook_address(cls, v):
        """Google only delivers notifications to HTTPS addresses."""
        if v and not v.startswith('https://'):
            raise ValueError("webhook_address must be an https:// URL")
        return v

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only
        self.credentials_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def credentials_dir(self) -> Path:
        return self.data_dir / "credentials"

    @property
    def google_token_path(self) -> Path:
        """Path to Google OAuth token file."""
        return self.google_token_file or self.credentials_dir / "google_token.json"


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to an env file overriding ``.env``

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# calwatch configuration
# Copy this file to .env and adjust

# Google Calendar API
# Authorized-user token JSON (client_id, client_secret, refresh_token)
# GOOGLE_TOKEN_FILE=~/.calwatch/credentials/google_token.json
GOOGLE_API_BASE_URL=https://www.googleapis.com/calendar/v3/

# Application
DEBUG=false
LOG_LEVEL=INFO

# Storage (optional)
# DATA_DIR=~/.calwatch
# DATABASE_URL=sqlite:///~/.calwatch/calwatch.db

# Performance
MAX_CONCURRENT_REQUESTS=10
REQUEST_TIMEOUT_SECONDS=30
PAGE_SIZE=250

# Push channels
# WEBHOOK_ADDRESS=https://calwatch.example.com/webhooks/google
# CHANNEL_TTL_SECONDS=604800
ENABLE_CHANNEL_RENEWAL=true
CHANNEL_RENEW_INTERVAL_MINS=60
CHANNEL_RENEW_BEFORE_MINS=1440
CLASSIFY_WITH_SEEN_IDS=false
'''

    with open(path, 'w') as f:
        f.write(example_content)
