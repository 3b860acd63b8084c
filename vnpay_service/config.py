from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

SANDBOX_PAYMENT_URL = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
SANDBOX_QR_URL = "https://sandbox.vnpayment.vn/paymentv2/VnPayQR/Transaction/Index.html"
SANDBOX_API_URL = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
LIVE_PAYMENT_URL = "https://pay.vnpay.vn/vpcpay.html"
LIVE_QR_URL = "https://pay.vnpay.vn/VnPayQR/Transaction/Index.html"
LIVE_API_URL = "https://merchant.vnpay.vn/merchant_webapi/api/transaction"


@dataclass(frozen=True)
class VNPayConfig:
    """Validated provider settings handed to the builder and verifier."""
    tmn_code: str
    hash_secret: str
    return_url: str
    payment_url: str
    qr_url: str
    api_url: str
    hash_algorithm: str = "sha512"
    locale: str = "vn"
    order_type: str = "250000"
    exchange_rate: Decimal = Decimal("23000")
    min_amount: int = 10000
    qr_ttl_minutes: int = 15


class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./vnpay_payments.db"
    service_api_key: str = ""

    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_return_url: str = ""
    # override the sandbox/live endpoints picked from `env`
    vnpay_url: Optional[str] = None
    vnpay_qr_url: Optional[str] = None
    vnpay_api_url: Optional[str] = None
    vnpay_hash_algorithm: str = "sha512"
    vnpay_locale: str = "vn"
    vnpay_order_type: str = "250000"
    vnpay_exchange_rate: Decimal = Decimal("23000")
    vnpay_min_amount: int = 10000
    vnpay_qr_ttl_minutes: int = 15

    store_timeout_seconds: float = 5.0
    asset_root: str = "./storage"
    frontend_base_url: str = "http://localhost:5173"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    def vnpay(self) -> VNPayConfig:
        """Return the provider config, failing fast when a required value is missing."""
        missing = [
            name for name, value in (
                ("VNPAY_TMN_CODE", self.vnpay_tmn_code),
                ("VNPAY_HASH_SECRET", self.vnpay_hash_secret),
                ("VNPAY_RETURN_URL", self.vnpay_return_url),
            ) if not value
        ]
        if missing:
            raise ConfigurationError("Missing VNPay configuration", missing=missing)

        live = self.is_production
        return VNPayConfig(
            tmn_code=self.vnpay_tmn_code,
            hash_secret=self.vnpay_hash_secret,
            return_url=self.vnpay_return_url,
            payment_url=self.vnpay_url or (LIVE_PAYMENT_URL if live else SANDBOX_PAYMENT_URL),
            qr_url=self.vnpay_qr_url or (LIVE_QR_URL if live else SANDBOX_QR_URL),
            api_url=self.vnpay_api_url or (LIVE_API_URL if live else SANDBOX_API_URL),
            hash_algorithm=self.vnpay_hash_algorithm,
            locale=self.vnpay_locale,
            order_type=self.vnpay_order_type,
            exchange_rate=self.vnpay_exchange_rate,
            min_amount=self.vnpay_min_amount,
            qr_ttl_minutes=self.vnpay_qr_ttl_minutes,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
