"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


STORE_TYPES = ("memory", "file", "postgres")
RUNTIME_CONFIG_MODES = ("none", "http")
ENVIRONMENTS = ("prod", "staging")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ledger store
    iap_store_type: str = "memory"
    iap_store_file_path: str = str(Path.cwd() / "data" / "iap-service.json")

    # Database Configuration (postgres store only)
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    iap_run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8110
    api_title: str = "IAP Entitlement API"
    api_version: str = "0.1.0"
    api_description: str = "Purchase verification and entitlement ledger for games"
    cors_allowed_origins: str = ""

    # Session tokens issued by the identity gateway (HS256)
    session_secret: str = ""
    session_issuer: str = "terapixel.identity"
    session_audience: str = "terapixel.game"
    clock_skew_seconds: int = 10

    # Internal routes (merge-profile, coins/adjust); disabled when empty
    iap_admin_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "iap-service"

    # Runtime (per-game) config
    iap_environment: str = "prod"
    iap_runtime_config_mode: str = "none"
    iap_runtime_config_url: str = ""
    iap_runtime_config_internal_key: str = ""
    iap_runtime_config_cache_ttl_seconds: int = 15

    # Payment providers - shared
    iap_provider_timeout_seconds: float = 30.0

    # Payment provider - Apple
    iap_apple_shared_secret: str = ""
    iap_apple_verify_url: str = "https://buy.itunes.apple.com/verifyReceipt"
    iap_apple_sandbox_verify_url: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # Payment provider - Google Play
    iap_google_client_email: str = ""
    iap_google_private_key: str = ""  # PEM, "\n" escapes allowed
    iap_google_token_url: str = "https://oauth2.googleapis.com/token"

    # Payment provider - PayPal
    iap_paypal_client_id: str = ""
    iap_paypal_client_secret: str = ""
    iap_paypal_base_url: str = "https://api-m.paypal.com"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.session_secret:
            errors.append("SESSION_SECRET is required but empty or missing")

        store_type = self.iap_store_type.strip().lower()
        if store_type not in STORE_TYPES:
            errors.append(f"IAP_STORE_TYPE must be one of {STORE_TYPES}, got: {store_type!r}")
        elif store_type == "postgres":
            if not self.database_url:
                errors.append("DATABASE_URL is required for IAP_STORE_TYPE=postgres")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )
        elif store_type == "file" and not self.iap_store_file_path.strip():
            errors.append("IAP_STORE_FILE_PATH is required for IAP_STORE_TYPE=file")

        if self.iap_environment.strip().lower() not in ENVIRONMENTS:
            errors.append(f"IAP_ENVIRONMENT must be one of {ENVIRONMENTS}")

        mode = self.iap_runtime_config_mode.strip().lower()
        if mode not in RUNTIME_CONFIG_MODES:
            errors.append(f"IAP_RUNTIME_CONFIG_MODE must be one of {RUNTIME_CONFIG_MODES}")
        elif mode == "http" and not self.iap_runtime_config_url:
            errors.append("IAP_RUNTIME_CONFIG_URL is required for IAP_RUNTIME_CONFIG_MODE=http")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def store_type(self) -> str:
        """Normalized ledger store type."""
        return self.iap_store_type.strip().lower()

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins from the comma-separated setting ("*" allows any)."""
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

    def static_provider_configs(self) -> dict[str, dict[str, str]]:
        """Static provider credentials keyed by provider, used when no per-game config exists."""
        return {
            "apple": {
                "shared_secret": self.iap_apple_shared_secret,
                "verify_url": self.iap_apple_verify_url,
                "sandbox_verify_url": self.iap_apple_sandbox_verify_url,
            },
            "google": {
                "client_email": self.iap_google_client_email,
                "private_key": self.iap_google_private_key,
                "token_url": self.iap_google_token_url,
            },
            "paypal_web": {
                "client_id": self.iap_paypal_client_id,
                "client_secret": self.iap_paypal_client_secret,
                "base_url": self.iap_paypal_base_url,
            },
        }


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
