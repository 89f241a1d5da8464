"""Token amount arithmetic. Amounts carry six decimal places."""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

TOKEN_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")
# Largest value a Numeric(20, 6) column holds.
MAX_AMOUNT = Decimal("99999999999999.999999")


def to_amount(value: Decimal | int | float | str) -> Decimal:
    """Normalize a numeric value to a token amount, truncating extra precision."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)


def split_platform_fee(price: Decimal, fee_rate: float | Decimal) -> tuple[Decimal, Decimal]:
    """Split a price into (platform_fee, provider_amount).

    ``platform_fee = price * fee_rate / 100`` rounded half-up to the token
    quantum; the provider receives the exact remainder so the two legs always
    sum to the price.
    """
    rate = Decimal(str(fee_rate))
    fee = (price * rate / Decimal(100)).quantize(TOKEN_QUANTUM, rounding=ROUND_HALF_UP)
    fee = min(max(fee, ZERO), price)
    return fee, price - fee
