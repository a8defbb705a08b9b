import os
from decimal import Decimal
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    kafka_enabled: bool = os.getenv("KAFKA_ENABLED", "true").lower() == "true"

    jwt_issuer: str = os.getenv("JWT_ISSUER", "marketplace")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    platform_fee_rate: Decimal = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.05"))
    premium_listing_fee: Decimal = Decimal(os.getenv("PREMIUM_LISTING_FEE", "0.00"))
    shipping_commission_rate: Decimal = Decimal(os.getenv("SHIPPING_COMMISSION_RATE", "0.00"))

    payment_confirmation_delay_seconds: float = float(os.getenv("PAYMENT_CONFIRMATION_DELAY_SECONDS", "2.0"))
    payment_confirmation_timeout_seconds: float = float(os.getenv("PAYMENT_CONFIRMATION_TIMEOUT_SECONDS", "30.0"))

    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
