from __future__ import annotations

from decimal import ROUND_UP, Decimal

from .pricing import RateUnavailable


class AmountConverter:
    """Arithmetic between a crypto's smallest unit, its major unit and fiat.

    Values are never rounded unless the method says so.
    """

    def __init__(self, *, decimals: int = 8) -> None:
        if decimals < 0:
            raise ValueError("decimals must be >= 0")
        self.decimals = decimals
        self.subdivision = Decimal(10) ** decimals

    def to_major_unit(self, smallest_unit_amount: int) -> Decimal:
        return Decimal(smallest_unit_amount) / self.subdivision

    def to_smallest_unit(self, major_unit_amount: Decimal) -> int:
        """Whole smallest units covering `major_unit_amount`, rounded up."""
        return int((major_unit_amount * self.subdivision).to_integral_value(rounding=ROUND_UP))

    def crypto_needed_for(self, fiat_amount: Decimal, fiat_per_crypto_rate: Decimal | None) -> Decimal:
        """Major units of crypto worth `fiat_amount` at the given rate."""
        if fiat_per_crypto_rate is None or fiat_per_crypto_rate == 0:
            raise RateUnavailable(f"Cannot convert {fiat_amount} without a non-zero rate")
        return Decimal(fiat_amount) / Decimal(fiat_per_crypto_rate)


BITCOIN = AmountConverter(decimals=8)


__all__ = ["AmountConverter", "BITCOIN"]
