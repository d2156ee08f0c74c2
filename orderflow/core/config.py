from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STRIPE_SECRET_KEY = "sk_test_orderflow_placeholder_change_me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OF_", extra="ignore")

    app_name: str = "orderflow"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./orderflow.db"
    test_database_url: str = "sqlite+pysqlite:///:memory:"

    currency: str = "USD"
    domestic_country: str = "US"
    order_number_prefix: str = "NP"
    order_number_width: int = 8
    order_source: str = "mobile_app"

    # All amounts below are int minor units.
    shipping_costs: dict[str, int] = Field(
        default_factory=lambda: {
            "standard": 999,
            "express": 1999,
            "overnight": 3999,
            "pickup": 0,
        }
    )
    shipping_delivery_days: dict[str, int] = Field(
        default_factory=lambda: {"standard": 5, "express": 2, "overnight": 1, "pickup": 0}
    )
    shipping_carrier: str = "Standard Shipping"
    free_shipping_threshold: int = 5000
    international_surcharge: int = 1000

    # Rates are decimal strings so no float ever reaches the money path.
    tax_rates: dict[str, str] = Field(
        default_factory=lambda: {
            "CA": "0.0875",
            "NY": "0.08",
            "TX": "0.0625",
            "FL": "0.06",
            "WA": "0.065",
        }
    )

    referral_discount_percent: int = 10
    promo_codes: dict[str, dict] = Field(
        default_factory=lambda: {
            "SAVE1234": {"kind": "percentage", "value": 10, "description": "10% off with code SAVE1234"},
            "WELCOME10": {"kind": "percentage", "value": 10, "description": "10% off your first order"},
            "SAVE2000": {"kind": "fixed_amount", "value": 2000, "description": "$20 off your order"},
            "FREESHIP": {"kind": "free_shipping", "value": 0, "description": "Free standard shipping"},
        }
    )

    # Payment gateway: fake | stripe
    payment_backend: str = "fake"
    payment_strict: bool = False
    stripe_api_base: str = "https://api.stripe.com"
    stripe_secret_key: str = DEFAULT_STRIPE_SECRET_KEY
    stripe_timeout_seconds: int = 15

    # Notification dispatcher: log | webhook
    notifier_backend: str = "log"
    notifier_webhook_url: str | None = None
    notifier_timeout_seconds: int = 5

    metrics_recent_orders_limit: int = 10

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        if self.payment_backend == "stripe" and self.stripe_secret_key == DEFAULT_STRIPE_SECRET_KEY:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: OF_STRIPE_SECRET_KEY"
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
