"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ECPay Configuration (defaults are the public staging merchant)
    ecpay_merchant_id: str = Field(default="3002607", description="ECPay merchant ID")
    ecpay_hash_key: str = Field(default="pwFHCqoQZGmho4w6", description="ECPay HashKey")
    ecpay_hash_iv: str = Field(default="EkRm7iFT261dpevs", description="ECPay HashIV")
    ecpay_payment_url: str = Field(
        default="https://payment-stage.ecpay.com.tw/Cashier/AioCheckOut/V5",
        description="ECPay all-in-one checkout endpoint",
    )
    ecpay_trade_desc: str = Field(default="NGO donation", description="TradeDesc field")
    ecpay_item_name: str = Field(default="NGO supplies donation", description="ItemName field")
    ecpay_timezone: str = Field(
        default="Asia/Taipei", description="Timezone used for MerchantTradeDate"
    )

    # Public URLs used to build ReturnURL / ClientBackURL
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL (e.g. an ngrok tunnel in development)",
    )
    client_back_path: str = Field(
        default="/orders/{trade_no}", description="Browser redirect path after payment"
    )

    # Resubmission
    resubmission_window_hours: int = Field(
        default=24, description="Max order age (hours) eligible for payment retry"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ngo_payments.db", description="Database connection URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="ngo-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Stuck settlement recovery
    reconciliation_retry_interval_seconds: int = Field(
        default=300, description="Interval between stuck-settlement recovery runs"
    )
    reconciliation_retry_min_age_seconds: int = Field(
        default=60, description="Min age of a stored callback before it is re-driven"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("ecpay_merchant_id")
    @classmethod
    def validate_merchant_id(cls, v: str) -> str:
        """ECPay merchant IDs are numeric and at most 10 characters."""
        if not v.isdigit() or len(v) > 10:
            raise ValueError("Invalid ECPay merchant ID. Must be up to 10 digits")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if pointed at the ECPay staging environment."""
        return "payment-stage" in self.ecpay_payment_url

    @property
    def callback_url(self) -> str:
        """Server-to-server ReturnURL for ECPay callbacks."""
        return f"{self.public_base_url}/webhooks/ecpay"

    def client_back_url(self, trade_no: str) -> str:
        """Browser ClientBackURL for a given trade number."""
        return self.public_base_url + self.client_back_path.format(trade_no=trade_no)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
