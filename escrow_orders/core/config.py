from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PLATFORM_SIGNING_KEY = "Lw8iRr6HF9qf8Bk6Y2mJxZTAWGFvPn8qWqv4HP47jtk="
DEFAULT_TOKEN_SIGNING_SECRET = "escrow-orders-dev-token-secret-change-me"
DEFAULT_SYSTEM_API_KEY = "eo-system-dev-key"
DEFAULT_MODERATOR_API_KEY = "eo-moderator-dev-key"
DEFAULT_TREASURY_ADDRESS = "UQ-escrow-treasury-dev"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="EO_", extra="ignore")

    app_name: str = "Order & Escrow Settlement Engine"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./escrow_orders.db"

    auth_enabled: bool = True
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    moderator_api_key: str = DEFAULT_MODERATOR_API_KEY
    system_actor_id: str = "system-001"
    moderator_actor_id: str = "moderator-001"
    token_signing_secret: str = DEFAULT_TOKEN_SIGNING_SECRET
    access_token_ttl_seconds: int = 3600

    platform_signing_key: str = Field(
        default=DEFAULT_PLATFORM_SIGNING_KEY,
        description="Base64 Ed25519 seed (32 bytes) used to sign ledger entries",
    )
    treasury_address: str = DEFAULT_TREASURY_ADDRESS

    review_window_days: int = 14
    authentication_fee: Decimal = Decimal("15.00")

    # Shipping resolver: tariff | http
    shipping_resolver: str = "tariff"
    shipping_base_url: str = "http://carrier-rates:8080"
    shipping_timeout_seconds: float = 5.0

    # Payment rail: fake | http
    payment_rail: str = "fake"
    payment_rail_base_url: str = "http://payment-rail:8081"
    payment_rail_timeout_seconds: float = 10.0
    settlement_poll_interval_seconds: float = 5.0
    settlement_poll_max_attempts: int = 24

    tracking_number_attempts: int = 5

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.platform_signing_key == DEFAULT_PLATFORM_SIGNING_KEY:
            insecure_items.append("EO_PLATFORM_SIGNING_KEY")
        if self.token_signing_secret == DEFAULT_TOKEN_SIGNING_SECRET:
            insecure_items.append("EO_TOKEN_SIGNING_SECRET")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("EO_SYSTEM_API_KEY")
        if self.moderator_api_key == DEFAULT_MODERATOR_API_KEY:
            insecure_items.append("EO_MODERATOR_API_KEY")
        if self.treasury_address == DEFAULT_TREASURY_ADDRESS:
            insecure_items.append("EO_TREASURY_ADDRESS")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
