from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WEBHOOK_SECRET = "whsec_settlement_dev_secret_change_me"
DEFAULT_ADMIN_API_KEY = "settle-admin-dev-key"
DEFAULT_SUPPORT_API_KEY = "settle-support-dev-key"
DEFAULT_SYSTEM_API_KEY = "settle-system-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="SETTLE_", extra="ignore")

    app_name: str = "Marketplace Settlement"
    env: str = "dev"
    log_level: str = "INFO"
    site_url: str = "http://localhost:3000"

    database_url: str = "sqlite+pysqlite:///./settlement.db"

    # Document store backend: sql | firestore
    document_backend: str = "sql"
    firestore_project_id: str | None = None
    firestore_database: str = "(default)"
    firestore_base_url: str = "https://firestore.googleapis.com/v1"
    firestore_client_email: str | None = None
    firestore_private_key: str | None = None
    firestore_token_uri: str = "https://oauth2.googleapis.com/token"
    firestore_token_skew_seconds: int = 60

    # Payment backend: stripe | fake
    payment_backend: str = "stripe"
    payment_strict: bool = True
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str = DEFAULT_WEBHOOK_SECRET
    stripe_webhook_tolerance_seconds: int = 300

    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_mode: str = "sandbox"

    # Notification backend: resend | log
    notification_backend: str = "resend"
    resend_api_key: str | None = None
    resend_base_url: str = "https://api.resend.com"
    mail_from: str = "Marketplace <orders@example.com>"
    fulfillment_email: str = "fulfillment@example.com"
    admin_bcc_email: str | None = None

    http_timeout_seconds: int = 20

    auth_enabled: bool = True
    admin_api_key: str = DEFAULT_ADMIN_API_KEY
    support_api_key: str = DEFAULT_SUPPORT_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    admin_actor_id: str = "admin-001"
    support_actor_id: str = "support-001"
    system_actor_id: str = "system-001"

    settlement_currency: str = "gbp"
    artist_platform_rate_percent: float = Field(default=1.0, ge=0, le=100)
    vinyl_seller_platform_rate_percent: float = Field(default=1.0, ge=0, le=100)
    merch_supplier_platform_rate_percent: float = Field(default=5.0, ge=0, le=100)
    processor_percent_rate: float = Field(default=1.4, ge=0, le=100, description="percent of item total")
    processor_fixed_fee: float = Field(default=0.20, ge=0, description="per charge, split across items")
    payout_service_fee_percent: float = Field(default=2.0, ge=0, le=100)

    low_stock_threshold: int = 5
    payout_retry_limit: int = 20
    payout_retry_max_age_days: int = 30

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_mode.lower() == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    def platform_rate_for(self, payee_role: str) -> float:
        rates = {
            "artist": self.artist_platform_rate_percent,
            "vinylSeller": self.vinyl_seller_platform_rate_percent,
            "merchSupplier": self.merch_supplier_platform_rate_percent,
        }
        return rates[payee_role]

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.stripe_webhook_secret == DEFAULT_WEBHOOK_SECRET:
            insecure_items.append("SETTLE_STRIPE_WEBHOOK_SECRET")
        if self.admin_api_key == DEFAULT_ADMIN_API_KEY:
            insecure_items.append("SETTLE_ADMIN_API_KEY")
        if self.support_api_key == DEFAULT_SUPPORT_API_KEY:
            insecure_items.append("SETTLE_SUPPORT_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("SETTLE_SYSTEM_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
