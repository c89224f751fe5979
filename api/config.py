"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=True, alias="API_DEBUG")

    # NGINX Paths
    sites_available_dir: str = Field(default="/etc/nginx/sites-available", alias="NGINX_SITES_AVAILABLE_DIR")
    sites_enabled_dir: str = Field(default="/etc/nginx/sites-enabled", alias="NGINX_SITES_ENABLED_DIR")
    nginx_binary: str = Field(default="/usr/sbin/nginx", alias="NGINX_BINARY")

    # NGINX activation
    nginx_reload_mode: str = Field(
        default="container",
        alias="NGINX_RELOAD_MODE",
        description="Where NGINX runs: 'container' (Docker exec) or 'host' (local binary)",
    )
    nginx_container_name: str = Field(
        default="nginx-proxy", alias="NGINX_CONTAINER_NAME", description="Docker container name for NGINX"
    )
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for NGINX operations"
    )
    nginx_restart_fallback: bool = Field(
        default=True,
        alias="NGINX_RESTART_FALLBACK",
        description="Restart the container when a graceful reload fails after a passing config test",
    )
    nginx_health_check_enabled: bool = Field(
        default=False, alias="NGINX_HEALTH_CHECK_ENABLED", description="Verify NGINX over HTTP after activation"
    )
    nginx_health_endpoint: str = Field(
        default="http://nginx-proxy/health",
        alias="NGINX_HEALTH_ENDPOINT",
        description="HTTP endpoint to verify NGINX health",
    )
    nginx_health_check_retries: int = Field(
        default=5, alias="NGINX_HEALTH_CHECK_RETRIES", description="Number of health check retry attempts"
    )
    nginx_health_check_interval: float = Field(
        default=1.0, alias="NGINX_HEALTH_CHECK_INTERVAL", description="Seconds between health check retries"
    )

    # SSL Configuration
    ssl_cert_dir: str = Field(default="/etc/nginx/ssl", alias="SSL_CERT_DIR")
    auto_renewable_issuers: list[str] = Field(
        default=["Let's Encrypt", "ZeroSSL"],
        alias="AUTO_RENEWABLE_ISSUERS",
        description="Issuers whose certificates may be renewed automatically",
    )
    manual_issuer_name: str = Field(
        default="Manual Upload", alias="MANUAL_ISSUER_NAME", description="Issuer label for uploads without one"
    )

    # ACME Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_use_staging: bool = Field(
        default=False,
        alias="ACME_USE_STAGING",
        description="Use staging environment to avoid rate limits during testing",
    )
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email for ACME account registration"
    )
    acme_challenge_dir: str = Field(
        default="/var/www/html/.well-known/acme-challenge",
        alias="ACME_CHALLENGE_DIR",
        description="Directory for ACME HTTP-01 challenge files",
    )
    acme_poll_timeout: int = Field(
        default=90, alias="ACME_POLL_TIMEOUT", description="Seconds to wait for order validation"
    )

    # Renewal scheduler
    cert_renewal_days: int = Field(
        default=30, alias="CERT_RENEWAL_DAYS", description="Days before expiry to trigger automatic renewal"
    )
    cert_renewal_check_interval_seconds: int = Field(
        default=3600,
        alias="CERT_RENEWAL_CHECK_INTERVAL_SECONDS",
        description="Seconds between renewal sweeps",
    )
    cert_renewal_scheduler_enabled: bool = Field(
        default=True, alias="CERT_RENEWAL_SCHEDULER_ENABLED", description="Start the renewal scheduler on startup"
    )

    # Storage
    database_path: str = Field(
        default="/var/lib/proxy-manager/proxy-manager.db",
        alias="DATABASE_PATH",
        description="Path to SQLite database for sites, certificates and activity",
    )

    # Concurrency
    serialize_site_mutations: bool = Field(
        default=True,
        alias="SERIALIZE_SITE_MUTATIONS",
        description="Hold a per-site lock for the duration of each reconcile transaction",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def ensure_directories():
    """Ensure required directories exist (for development/testing)."""
    dirs_to_create = [
        settings.sites_available_dir,
        settings.sites_enabled_dir,
        settings.ssl_cert_dir,
        str(Path(settings.database_path).parent),
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)