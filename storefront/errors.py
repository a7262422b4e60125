"""
Storefront — エラー定義

エラーは種類ごとに基底クラスを分け、HTTP ステータスをクラス属性として持つ。
API 層は StorefrontError を一つのハンドラで JSON に変換する。

重複イベント(Duplicate)は例外ではなく RecordOutcome.DUPLICATE として返す。
"""


class StorefrontError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ── Input ────────────────────────────────────────


class InputError(StorefrontError):
    status_code = 422


class InvalidAmount(InputError):
    code = "invalid_amount"


class UnsupportedCurrency(InputError):
    code = "unsupported_currency"


class UnknownOrder(InputError):
    status_code = 404
    code = "unknown_order"


class UnknownGateway(InputError):
    status_code = 404
    code = "unknown_gateway"


# ── Business ─────────────────────────────────────


class BusinessError(StorefrontError):
    status_code = 409


class IllegalTransition(BusinessError):
    code = "illegal_transition"


class RefundRequired(IllegalTransition):
    """支払い済みの注文は返金なしではキャンセルできない"""
    code = "refund_required"


class RequiresPayment(BusinessError):
    code = "requires_payment"


class OutOfStock(BusinessError):
    code = "out_of_stock"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {product_id}: requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class AlreadyTerminal(BusinessError):
    code = "already_terminal"


class Unsupported(BusinessError):
    status_code = 422
    code = "unsupported"


# ── Gateway ──────────────────────────────────────


class GatewayError(StorefrontError):
    status_code = 400


class SignatureInvalid(GatewayError):
    code = "signature_invalid"


class PayloadMalformed(GatewayError):
    code = "payload_malformed"


class GatewayUnavailable(GatewayError):
    status_code = 502
    code = "gateway_unavailable"


class UnknownEvent(GatewayError):
    status_code = 422
    code = "unknown_event"


# ── Conflict ─────────────────────────────────────


class Rejected(StorefrontError):
    """台帳のシーケンス規則に違反するイベント"""
    status_code = 409
    code = "rejected"


# ── Internal ─────────────────────────────────────


class InternalError(StorefrontError):
    status_code = 500


class StoreUnavailable(InternalError):
    status_code = 503
    code = "store_unavailable"


class StaleOrder(InternalError):
    """楽観的ロック (version) の競合"""
    status_code = 503
    code = "stale_order"


class Bug(InternalError):
    code = "internal_error"
