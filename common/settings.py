from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway configuration, read from the environment (and an optional .env file).

    Built once by the entry point and handed to the composition root; nothing
    in the codebase reads a module-level instance.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Key derivation
    seed: str = ""
    account_prefix: str = "nano_"
    native_currency: str = "NANO"
    raw_exponent: int = 30

    # Storage
    database_url: str = "sqlite:///gateway.db"

    # Collaborators
    node_url: str = "http://127.0.0.1:7076"
    node_timeout_seconds: float = 10.0
    price_api_url: str = "https://api.coingecko.com/api/v3"
    price_coin_id: str = "nano"
    notification_url: Optional[str] = None

    # Tokens
    token_secret: str = "dev-secret-change"
    token_issuer: str = "payment-gateway"
    token_ttl_seconds: int = 7 * 24 * 3600

    # Checking
    allowed_duration_seconds: float = 3600.0
    min_check_interval_seconds: float = 2.0
    max_check_interval_seconds: float = 120.0
    check_interval_multiplier: float = 1.5
    underpayment_tolerance_fixed: int = 0
    underpayment_tolerance_percent: Decimal = Decimal("0")

    # Retention (None keeps finished payments forever)
    retention_days: Optional[int] = None
    retention_interval_seconds: float = 3600.0

    # HTTP
    admin_password: str = ""
    # Per-client requests allowed on /api/pay and /api/price per window; 0 disables
    rate_limit_requests: int = 60
    rate_limit_window_seconds: int = 60
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    log_level: str = "INFO"
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
