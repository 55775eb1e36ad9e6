from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from .amounts import BITCOIN, AmountConverter
from .collaborators import PayableRef
from .ledger import ObligationId, TransactionLedger
from .pricing import ExchangeRateSource, RateQuote, RateUnavailable
from .settings import PaymentSettings

if TYPE_CHECKING:
    from .lifecycle import PaymentLifecycle, Transition

logger = logging.getLogger(__name__)


class PaymentState(StrEnum):
    PENDING = "pending"
    PARTIAL_PAYMENT = "partial_payment"
    PAID_IN_FULL = "paid_in_full"
    COMPED = "comped"


class AddressAlreadyAssigned(Exception):
    def __init__(self, obligation_id: ObligationId, address: str) -> None:
        super().__init__(f"Obligation {obligation_id} already has receiving address {address}")
        self.obligation_id = obligation_id
        self.address = address


class PaymentObligation(BaseModel):
    """A fiat debt settled in crypto.

    `crypto_amount_due` (smallest units) and `btc_conversion` are a cache of
    the last recomputation against the current rate. Only
    `fiat_amount_paid()` compared with `price` drives state transitions.
    """

    id: ObligationId = ObligationId(Field(default_factory=uuid4))
    price: Decimal = Field(frozen=True)
    currency: str
    reason: str
    payable: PayableRef = Field(frozen=True)
    state: PaymentState = PaymentState.PENDING
    crypto_amount_due: int | None = None
    btc_conversion: Decimal | None = None
    address: str | None = None
    ledger: TransactionLedger = Field(default_factory=TransactionLedger)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _validate_fields(self) -> PaymentObligation:
        if self.price <= 0:
            raise ValueError("price must be > 0")
        if not self.reason or not self.reason.strip():
            raise ValueError("reason must be non-empty")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError(f"currency must be a 3-letter code, got {self.currency!r}")
        self.currency = self.currency.upper()
        return self

    @classmethod
    def new(
        cls,
        *,
        price: Decimal,
        reason: str,
        payable: PayableRef,
        settings: PaymentSettings,
        rate_source: ExchangeRateSource,
        currency: str | None = None,
        converter: AmountConverter = BITCOIN,
    ) -> PaymentObligation:
        """Build a pending obligation with its initial crypto amount due.

        Raises RateUnavailable when no rate is known; nothing is created then.
        """
        obligation = cls(
            price=price,
            currency=currency or settings.default_currency,
            reason=reason,
            payable=payable,
        )
        obligation.recompute_crypto_amount_due(rate_source, crypto_kind=settings.crypto_kind, converter=converter)
        return obligation

    @property
    def is_settled(self) -> bool:
        return self.state in (PaymentState.PAID_IN_FULL, PaymentState.COMPED)

    def fiat_amount_paid(self, converter: AmountConverter = BITCOIN) -> Decimal:
        # Round the aggregate only, so there aren't any partial currency units.
        return self.ledger.fiat_total(converter).quantize(Decimal(1), rounding=ROUND_HALF_UP)

    def fiat_amount_due(self, converter: AmountConverter = BITCOIN) -> Decimal:
        return max(self.price - self.fiat_amount_paid(converter), Decimal(0))

    def fiat_amount_overpaid(self, converter: AmountConverter = BITCOIN) -> Decimal:
        return max(self.fiat_amount_paid(converter) - self.price, Decimal(0))

    def recompute_crypto_amount_due(
        self,
        rate_source: ExchangeRateSource,
        *,
        crypto_kind: str = "BTC",
        converter: AmountConverter = BITCOIN,
    ) -> RateQuote:
        quote = rate_source.latest_rate(crypto_kind)
        needed = converter.crypto_needed_for(self.fiat_amount_due(converter), quote.fiat_per_crypto)
        self.crypto_amount_due = converter.to_smallest_unit(needed)
        self.btc_conversion = quote.fiat_per_crypto
        return quote

    def on_new_transactions_observed(
        self,
        rate_source: ExchangeRateSource,
        lifecycle: PaymentLifecycle,
        *,
        dispatch: bool = True,
        converter: AmountConverter = BITCOIN,
    ) -> Transition | None:
        """Refresh the crypto-due cache, then re-evaluate the lifecycle.

        The lifecycle is evaluated even if the rate is unavailable. With
        `dispatch=False` the caller runs `lifecycle.dispatch` itself.
        """
        try:
            self.recompute_crypto_amount_due(
                rate_source, crypto_kind=lifecycle.settings.crypto_kind, converter=converter
            )
        except RateUnavailable as exc:
            logger.warning("Keeping stale crypto amount due for obligation %s: %s", self.id, exc)
        if dispatch:
            return lifecycle.check_if_paid(self, converter)
        return lifecycle.evaluate(self, converter)

    def assign_address(self, address: str) -> None:
        if self.address is not None:
            raise AddressAlreadyAssigned(self.id, self.address)
        if not address:
            raise ValueError("address must be non-empty")
        self.address = address


__all__ = ["AddressAlreadyAssigned", "PaymentObligation", "PaymentState"]
