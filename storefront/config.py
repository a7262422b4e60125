"""
Storefront — 設定

環境変数を起動時に一度だけ読み込み、Settings モデルにまとめる。
コア内部では os.environ を直接参照せず、CoreContext 経由で Settings を渡す。
"""

import logging
import os

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str | None = None
    public_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    # ── ゲートウェイ認証情報 ─────────────────────
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_webhook_secret: str | None = None
    razorpay_api_url: str = "https://api.razorpay.com"

    stripe_secret_key: str | None = None
    stripe_publishable_key: str | None = None
    stripe_webhook_secret: str | None = None

    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_webhook_id: str | None = None
    paypal_api_url: str = "https://api-m.sandbox.paypal.com"

    # ── タイムアウト・TTL ────────────────────────
    intent_ttl_minutes: int = 30
    reservation_ttl_minutes: int = 45
    authorization_hold_days: int = 7
    gateway_timeout_seconds: float = 15.0
    sweep_interval_seconds: float = 60.0

    # ── 価格計算 (最小通貨単位) ──────────────────
    tax_rate_basis_points: int = 1800
    free_shipping_threshold: int = 50000
    shipping_fee: int = 5000
    default_currency: str = "INR"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """環境変数から Settings を組み立てる。未設定の項目はデフォルト値。"""
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(name.upper())
            if raw not in (None, ""):
                values[name] = raw
        return cls.model_validate(values)

    @property
    def success_url(self) -> str:
        return f"{self.frontend_url}/payment/success"

    @property
    def failure_url(self) -> str:
        return f"{self.frontend_url}/payment/failed"

    @property
    def pending_url(self) -> str:
        return f"{self.frontend_url}/payment/pending"

    def return_url(self, gateway: str) -> str:
        return f"{self.public_base_url}/payments/return/{gateway}"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
