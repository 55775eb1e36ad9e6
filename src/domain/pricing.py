from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol


class RateUnavailable(LookupError):
    def __init__(self, message: str, *, crypto_kind: str | None = None) -> None:
        super().__init__(message)
        self.crypto_kind = crypto_kind


@dataclass(frozen=True)
class RateQuote:
    """Fiat value of one major unit of crypto, as known at `as_of`."""

    fiat_per_crypto: Decimal
    as_of: datetime


class ExchangeRateSource(Protocol):
    """Lookup interface for the most recent crypto→fiat rate."""

    def latest_rate(self, crypto_kind: str) -> RateQuote: ...
