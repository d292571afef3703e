# src/calmirror/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        # Allow reading credentials directly from files in this directory
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google OAuth / API Configuration
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(
        None, description="Google OAuth Client Secret (optional with PKCE)"
    )
    google_client_id_file: Optional[str] = Field(None, description="Path to file containing Google Client ID")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )
    google_auth_uri: str = Field(default="https://accounts.google.com/o/oauth2/v2/auth")
    google_token_uri: str = Field(default="https://oauth2.googleapis.com/token")
    google_api_base_url: str = Field(default="https://www.googleapis.com/calendar/v3")

    # Application Configuration
    app_name: str = Field(default="calmirror", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calmirror",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )
    credentials_dir: Optional[Path] = Field(
        default=None,
        description="Credentials directory (defaults to data_dir/credentials)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # HTTP Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="HTTP request timeout"
    )

    @field_validator('data_dir', 'credentials_dir', mode='before')
    @classmethod
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        return Path(v).expanduser().absolute()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('google_client_id', 'google_client_secret')
    @classmethod
    def strip_credential(cls, v):
        if v is None:
            return v
        return v.strip() or None

    @model_validator(mode='after')
    def set_default_paths(self):
        """Derive database URL and credentials directory from data_dir."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/calmirror.db"
        if self.credentials_dir is None:
            self.credentials_dir = self.data_dir / "credentials"
        return self

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        if kwargs.get('google_client_id_file'):
            kwargs['google_client_id'] = self._read_credential_file(kwargs['google_client_id_file'])
        if kwargs.get('google_client_secret_file'):
            kwargs['google_client_secret'] = self._read_credential_file(kwargs['google_client_secret_file'])

        super().__init__(**kwargs)

    @staticmethod
    def _read_credential_file(file_path: str) -> str:
        """Read credential from file with proper error handling.

        Args:
            file_path: Path to credential file

        Returns:
            Credential value

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only
        if self.credentials_dir:
            self.credentials_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    @property
    def google_token_path(self) -> Path:
        """Path to Google OAuth token file."""
        return self.credentials_dir / "google_token.json"

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

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
    example_content = '''# calmirror configuration
# Copy this file to .env and fill in your actual credentials

# Google OAuth client (Desktop app). The secret is optional with PKCE.
GOOGLE_CLIENT_ID=your_google_client_id_here
# GOOGLE_CLIENT_SECRET=your_google_client_secret_here

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=15
SYNC_CONFIG__SYNC_RANGE_YEARS=2
SYNC_CONFIG__MAX_RETRIES=3
SYNC_CONFIG__RETRY_BASE_DELAY_SECONDS=0.5
SYNC_CONFIG__TIMEZONE=UTC

# HTTP Configuration
REQUEST_TIMEOUT_SECONDS=30

# Storage Configuration (optional)
# DATA_DIR=~/.calmirror
# DATABASE_URL=sqlite:///~/.calmirror/calmirror.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
