from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

from domain.collaborators import NotificationError, PayableRef
from domain.ledger import ObligationId
from domain.payments import PaymentObligation
from domain.pricing import RateQuote, RateUnavailable

FIXED_AS_OF = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedRateSource:
    def __init__(self, rate: Decimal | None) -> None:
        self.rate = rate
        self.calls: list[str] = []

    def latest_rate(self, crypto_kind: str) -> RateQuote:
        self.calls.append(crypto_kind)
        if self.rate is None:
            raise RateUnavailable("no rate recorded", crypto_kind=crypto_kind)
        return RateQuote(fiat_per_crypto=self.rate, as_of=FIXED_AS_OF)


class RecordingSubscriber:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []

    def subscribe(self, address: str) -> None:
        if self.fail:
            raise NotificationError("subscribe failed", status_code=503)
        self.subscribed.append(address)

    def unsubscribe(self, address: str) -> None:
        if self.fail:
            raise NotificationError("unsubscribe failed", status_code=503)
        self.unsubscribed.append(address)


class RecordingSettlementHandler:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.settled: list[tuple[PayableRef, str]] = []

    def on_payment_settled(self, payable: PayableRef, obligation: PaymentObligation) -> None:
        if self.fail:
            raise RuntimeError("order fulfilment failed")
        self.settled.append((payable, obligation.state.value))


class SequentialAddressProvider:
    def __init__(self) -> None:
        self._counter = count(1)
        self.reserved: dict[ObligationId, str] = {}

    def reserve(self, obligation_id: ObligationId) -> str:
        address = f"bc1qtest{next(self._counter):04d}"
        self.reserved[obligation_id] = address
        return address
