"""
Storefront Configuration Module

Loads environment variables for the store backend: database, payment provider,
game server integration and fulfillment tuning.
"""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Webhook secrets are environment-based and never logged
    - Empty provider or game server credentials select the in-process mocks
    - Demo mode exposes error types in 500 responses
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./storefront.db"

    # Webhook Secrets (HMAC-SHA256 over the raw request body)
    pix_webhook_secret: str = ""
    payment_webhook_secret: str = ""
    game_server_webhook_secret: str = ""
    webhook_signature_required: bool = True

    # PIX Payment Provider
    pix_base_url: str = "https://api-pix.gerencianet.com.br"
    pix_client_id: str = ""
    pix_client_secret: str = ""
    pix_key: str = ""
    pix_timeout_seconds: float = 15.0
    pix_charge_ttl_seconds: int = 900  # 15 minutes

    # Game Server
    game_server_url: str = "http://localhost:30120"
    game_server_token: str = ""
    game_server_timeout_seconds: float = 10.0

    # Delivery Protocol
    delivery_attempts: int = 3
    delivery_retry_delay_seconds: float = 5.0
    retry_after_offline_seconds: int = 300
    retry_after_transient_seconds: int = 60
    delivery_lease_seconds: int = 120  # must exceed a full retry loop against a slow server

    # Fulfillment Policy
    currency: str = "BRL"
    vip_stacking: Literal["extend", "reset"] = "extend"

    # Background Jobs
    scheduler_enabled: bool = True
    pending_queue_interval_seconds: int = 120
    expiry_sweep_interval_seconds: int = 60

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def pix_configured(self) -> bool:
        return bool(self.pix_client_id and self.pix_client_secret)

    @property
    def game_server_configured(self) -> bool:
        return bool(self.game_server_url and self.game_server_token)


# Global settings instance
settings = Settings()
