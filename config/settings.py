"""PastCare Billing – Application Configuration.

Pydantic Settings. Loads from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Service ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000
    gateway_public_url: str = ""  # Base URL for Paystack callback redirects
    cors_allowed_origins: str = "http://localhost:4200"

    # --- Database ---
    database_url: str = ""

    # --- Paystack ---
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 15.0
    paystack_callback_url: str = ""

    # --- Billing policy ---
    billing_currency: str = "GHS"  # Paystack does not settle USD for our account
    default_trial_days: int = 14
    default_grace_period_days: int = 7
    upgrade_prompt_threshold: float = 80.0
    reference_prefix: str = "SUB"
    renewal_retry_hours: int = 24  # Wait before re-charging a declined renewal

    # --- Platform admin ---
    admin_api_token: str = ""  # X-Admin-Token for /admin/billing; empty disables the admin API

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
