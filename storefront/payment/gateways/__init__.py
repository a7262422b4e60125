"""
Payment — ゲートウェイレジストリ

名前 → アダプターの対応表。新しいゲートウェイはアダプターを登録するだけで追加でき、
コーディネーター側の変更は不要。認証情報が設定されていないゲートウェイは登録しない
(代引きは常に利用可能)。
"""

import logging

from ...config import Settings
from ...errors import UnknownGateway
from .base import GatewayAdapter
from .cod import CodAdapter
from .paypal import PayPalAdapter
from .razorpay import RazorpayAdapter
from .stripe_gateway import StripeAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(self) -> None:
        self._adapters: dict[str, GatewayAdapter] = {}

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.name] = adapter
        logger.info("Registered payment gateway: %s", adapter.name)

    def get(self, name: str) -> GatewayAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownGateway(f"Unknown payment gateway: {name}")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def describe_all(self, currency: str | None = None) -> list[dict]:
        methods = [adapter.describe() for adapter in self._adapters.values()]
        if currency:
            methods = [m for m in methods if currency.upper() in m["supported_currencies"]]
        return methods

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_registry(settings: Settings) -> AdapterRegistry:
    """Settings に認証情報があるゲートウェイを登録する。"""
    registry = AdapterRegistry()
    timeout = settings.gateway_timeout_seconds

    if settings.razorpay_key_id and settings.razorpay_key_secret:
        registry.register(
            RazorpayAdapter(
                settings.razorpay_key_id,
                settings.razorpay_key_secret,
                settings.razorpay_webhook_secret,
                api_url=settings.razorpay_api_url,
                timeout=timeout,
            )
        )
    if settings.stripe_secret_key:
        registry.register(
            StripeAdapter(
                settings.stripe_secret_key,
                settings.stripe_publishable_key,
                settings.stripe_webhook_secret,
                timeout=timeout,
            )
        )
    if settings.paypal_client_id and settings.paypal_client_secret:
        registry.register(
            PayPalAdapter(
                settings.paypal_client_id,
                settings.paypal_client_secret,
                settings.paypal_webhook_id,
                api_url=settings.paypal_api_url,
                timeout=timeout,
            )
        )
    registry.register(CodAdapter(timeout))
    return registry


__all__ = [
    "AdapterRegistry",
    "CodAdapter",
    "GatewayAdapter",
    "PayPalAdapter",
    "RazorpayAdapter",
    "StripeAdapter",
    "build_registry",
]
