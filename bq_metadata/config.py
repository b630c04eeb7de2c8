"""
Configuration settings for BigQuery Metadata API
Using Pydantic Settings for type validation and environment variable management
"""

import os
import secrets
import tempfile
from functools import lru_cache
from typing import Annotated, List, Optional

import structlog
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .exceptions import ConfigurationError

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings with validation"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Basic app settings
    debug: bool = Field(default=False, description="Enable debug mode")
    environment: str = Field(default="production", description="Environment name")
    port: int = Field(default=8080, description="Server port")

    # Google Cloud settings
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "GOOGLE_CLOUD_PROJECT", "BIGQUERY_PROJECT_ID"),
        description="Project whose metadata is browsed; defaults to the credential's project",
    )
    service_account_key_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_APPLICATION_CREDENTIALS", "SERVICE_ACCOUNT_KEY_PATH"),
        description="Path to the default service account JSON file",
    )
    service_account_json: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_APPLICATION_CREDENTIALS_JSON", "SERVICE_ACCOUNT_JSON"),
        description="Default service account key as JSON string (written to a temp file at startup)",
    )

    # BigQuery settings
    bigquery_location: Optional[str] = Field(default=None, description="BigQuery location for SQL jobs")
    sql_backend_enabled: bool = Field(default=True, description="Expose the INFORMATION_SCHEMA backend")

    # Session credential settings
    session_credentials_dir: str = Field(
        default="./session-credentials",
        description="Directory holding one uploaded key file per session",
    )
    session_secret_key: Optional[str] = Field(
        default=None,
        description="Secret used to sign the session cookie; required in production",
    )
    session_cookie_name: str = Field(default="bq_metadata_session", description="Session cookie name")
    session_https_only: bool = Field(default=False, description="Only send session cookie over HTTPS")

    # Security settings
    allowed_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Allowed CORS origins"
    )
    require_auth: bool = Field(
        default=False,
        description="Require a Firebase ID token and bind uploaded keys to the token's user",
    )
    firebase_project_id: Optional[str] = Field(default=None, description="Firebase project ID")
    firebase_service_account_key: Optional[str] = Field(
        default=None,
        description="Firebase service account key as JSON string"
    )

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    upload_rate_limit: str = Field(default="10/minute", description="Limit for credential uploads")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Monitoring
    enable_metrics: bool = Field(default=True, description="Enable Prometheus metrics")

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value"""
        valid_envs = ['development', 'staging', 'production', 'testing']
        if v not in valid_envs:
            raise ValueError(f'Environment must be one of {valid_envs}')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of {valid_levels}')
        return v.upper()

    @field_validator('allowed_origins', mode='before')
    @classmethod
    def parse_allowed_origins(cls, v):
        """Parse allowed origins from string if needed"""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('upload_rate_limit')
    @classmethod
    def validate_rate_limit(cls, v):
        """Rate limits use the '<count>/<period>' notation"""
        count, _, period = v.partition('/')
        if not count.strip().isdigit() or not period.strip():
            raise ValueError("Rate limit must look like '10/minute'")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == 'production' and not self.debug


@lru_cache()
def get_settings() -> Settings:
    """
    Create cached settings instance
    The lru_cache decorator ensures we create only one instance
    """
    return Settings()


def resolve_session_secret(settings: Settings) -> str:
    """
    Secret for signing session cookies.

    Every worker and every restart must share it, otherwise cookies stop
    validating and sessions lose their uploaded key. Production refuses to start
    without one; other environments get a random per-process secret.
    """
    if settings.session_secret_key:
        return settings.session_secret_key

    if settings.is_production:
        raise ConfigurationError("SESSION_SECRET_KEY must be set in production")

    logger.warning(
        "SESSION_SECRET_KEY not set, using a random per-process secret",
        environment=settings.environment
    )
    return secrets.token_urlsafe(32)


def materialize_default_key(settings: Settings) -> Optional[str]:
    """
    Resolve the path of the process-wide default key.

    When the key arrives as JSON content (typical for PaaS deployments) it is
    written to a private temporary file and that path is returned. Otherwise the
    configured path is returned unchanged, or None to use Application Default
    Credentials.
    """
    if settings.service_account_json:
        fd, path = tempfile.mkstemp(prefix="service-account-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(settings.service_account_json)
        logger.info("Default service account materialized from environment", path=path)
        return path

    if settings.service_account_key_path:
        if not os.path.exists(settings.service_account_key_path):
            logger.error(
                "Default service account key file not found",
                path=settings.service_account_key_path
            )
        else:
            logger.info("Using default service account key file", path=settings.service_account_key_path)
        return settings.service_account_key_path

    logger.info("No default key configured, falling back to Application Default Credentials")
    return None


# Development/testing overrides
class TestSettings(Settings):
    """Settings for testing environment"""
    debug: bool = True
    environment: str = "testing"
    rate_limit_enabled: bool = False
    enable_metrics: bool = False


# Example .env file content (for documentation)
ENV_EXAMPLE = """
# Basic settings
DEBUG=false
ENVIRONMENT=production
PORT=8080

# Google Cloud
GCP_PROJECT_ID=my-analytics-project
GOOGLE_APPLICATION_CREDENTIALS=/path/to/service-account.json
# OR
GOOGLE_APPLICATION_CREDENTIALS_JSON={"type":"service_account",...}

# BigQuery
BIGQUERY_LOCATION=US
SQL_BACKEND_ENABLED=true

# Sessions
SESSION_CREDENTIALS_DIR=./session-credentials
SESSION_SECRET_KEY=change-me
SESSION_HTTPS_ONLY=true

# Security
ALLOWED_ORIGINS=https://your-domain.com,https://www.your-domain.com
REQUIRE_AUTH=false
FIREBASE_PROJECT_ID=your-firebase-project

# Rate limiting
RATE_LIMIT_ENABLED=true
UPLOAD_RATE_LIMIT=10/minute

# Logging
LOG_LEVEL=INFO

# Monitoring
ENABLE_METRICS=true
"""
