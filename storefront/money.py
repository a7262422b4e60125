"""
金額の変換。内部は常に最小通貨単位 (paise / cents) の整数。

主単位 (小数) への変換はゲートウェイの通信フォーマットと表示用フィールドでのみ行う。
"""

from decimal import ROUND_HALF_UP, Decimal

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX"})


def exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_major(amount: int, currency: str) -> Decimal:
    digits = exponent(currency)
    return (Decimal(amount) / (Decimal(10) ** digits)).quantize(Decimal(1).scaleb(-digits))


def to_minor(value: Decimal | str | float, currency: str) -> int:
    digits = exponent(currency)
    scaled = Decimal(str(value)) * (Decimal(10) ** digits)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_major(amount: int, currency: str) -> str:
    """PayPal などの通信フォーマット用: '1499.00'"""
    return str(to_major(amount, currency))


def apply_rate(amount: int, basis_points: int) -> int:
    """basis points (1800 = 18%) を掛けて四捨五入する。"""
    return (amount * basis_points + 5000) // 10000
