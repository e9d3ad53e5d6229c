import os
from dataclasses import dataclass, field
from decimal import Decimal

from dotenv import load_dotenv

# 載入環境變數
load_dotenv()

TAX_RATE = Decimal("0.10")
PRICE_EPSILON = Decimal("0.01")
SPECIAL_INSTRUCTIONS_MAX = 500
ORDER_NUMBER_ATTEMPTS = 5


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class Settings:
    database_url: str = "sqlite:///./orders.db"
    payment_provider: str = "razorpay"
    currency: str = "INR"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""

    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""

    payment_timeout_seconds: int = 10
    pickup_buffer_minutes: int = 10
    default_prep_minutes: int = 15

    line_channel_access_token: str = ""
    shop_owner_id: str = ""
    line_timeout_seconds: int = 5

    log_level: str = "INFO"
    cors_origins: list = field(default_factory=lambda: ["*"])


def load_settings() -> Settings:
    """Build settings from the process environment (after .env is loaded)."""
    origins = os.getenv("CORS_ORIGINS", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./orders.db"),
        payment_provider=os.getenv("PAYMENT_PROVIDER", "razorpay").lower(),
        currency=os.getenv("CURRENCY", "INR").upper(),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        payment_timeout_seconds=_env_int("PAYMENT_TIMEOUT_SECONDS", 10),
        pickup_buffer_minutes=_env_int("PICKUP_BUFFER_MINUTES", 10),
        default_prep_minutes=_env_int("DEFAULT_PREP_MINUTES", 15),
        line_channel_access_token=os.getenv("LINE_CHANNEL_ACCESS_TOKEN", ""),
        shop_owner_id=os.getenv("SHOP_OWNER_ID", ""),
        line_timeout_seconds=_env_int("LINE_TIMEOUT_SECONDS", 5),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
