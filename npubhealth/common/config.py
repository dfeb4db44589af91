"""Central environment-driven settings for the payment client and API.

Loaded once per process. Per-flow overrides go through `PaymentOptions`;
everything else is controlled by environment variables or a local `.env`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "npubhealth"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:5000"
    payment_polling_interval_ms: int = 5000
    payment_max_consecutive_failures: int = 5
    payment_request_timeout_seconds: float = 10.0
    payment_cancel_on_close: bool = False
    bitvora_api_key: str = ""
    bitvora_network: str = "mainnet"
    bitvora_webhook_secret: str = ""
    invoice_expiry_seconds: int = 3600
    identity_timeout_seconds: float = 10.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
