from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"
    app_env: str = "local"
    app_version: str | None = None
    default_currency: str = "BDT"
    callback_base_url: str = "http://localhost:8000"

    # Gateway behaviour
    gateway_timeout_seconds: float = 30.0
    lock_timeout_seconds: float = 10.0
    token_cache_margin_seconds: int = 60
    log_provider_events: bool = False
    # "ignore" keeps the payment untouched on unknown gateway statuses, "raise" fails the request
    unknown_status_policy: str = "ignore"

    # Stripe config
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # bKash config
    bkash_base_url: str = "https://tokenized.sandbox.bka.sh/v1.2.0-beta/tokenized"
    bkash_app_key: str = ""
    bkash_app_secret: str = ""
    bkash_username: str = ""
    bkash_password: str = ""
    bkash_webhook_secret: str = ""

    # Nagad config
    nagad_base_url: str = "https://sandbox.mynagad.com:10080/remote-payment-gateway-1.0/api/dfs"
    nagad_merchant_id: str = ""
    nagad_private_key: str = ""  # PEM encoded merchant key
    nagad_webhook_secret: str = ""

    # Rocket config
    rocket_base_url: str = "https://sandbox.rocket.com.bd"
    rocket_client_id: str = ""
    rocket_client_secret: str = ""
    rocket_store_password: str = ""

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "payments"

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql+psycopg2://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
