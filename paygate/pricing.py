"""USD to millisatoshi conversion."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from .errors import InvalidRate

Number = Union[int, float, Decimal, str]

MSATS_PER_BTC = Decimal("100000000000")
ROUNDING_STEP = Decimal("1000")


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def price_to_millisats(usd_price: Number, btc_usd_rate: Number, margin_pct: Number = 0) -> int:
    """Convert a USD price to msats at ``btc_usd_rate``, marked up by ``margin_pct`` percent.

    The result is rounded half-up to the nearest whole satoshi (1000 msats).
    """
    rate = _as_decimal(btc_usd_rate)
    if not rate.is_finite() or rate <= 0:
        raise InvalidRate(f"BTC/USD rate must be positive, got {btc_usd_rate}")

    multiplier = Decimal("1") + _as_decimal(margin_pct) / Decimal("100")
    raw = _as_decimal(usd_price) * MSATS_PER_BTC * multiplier / rate
    steps = (raw / ROUNDING_STEP).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(steps * ROUNDING_STEP)


__all__ = ["MSATS_PER_BTC", "price_to_millisats"]
