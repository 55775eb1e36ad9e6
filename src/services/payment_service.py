from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Iterator
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from db.repositories import PaymentObligationRepository
from domain.amounts import BITCOIN, AmountConverter
from domain.collaborators import AddressProvider, PayableRef
from domain.ledger import Transaction
from domain.lifecycle import PaymentEvent, PaymentLifecycle, Transition
from domain.payments import PaymentObligation, PaymentState
from domain.pricing import ExchangeRateSource
from domain.settings import PaymentSettings

logger = logging.getLogger(__name__)


class ObligationNotFound(LookupError):
    def __init__(self, obligation_id: UUID) -> None:
        super().__init__(f"Payment obligation {obligation_id} not found")
        self.obligation_id = obligation_id


@dataclass(frozen=True)
class ObservedTransaction:
    """A transaction reported by the inbound-transaction watcher.

    Without `btc_conversion`, the current rate is frozen onto the transaction.
    """

    transaction_hash: str
    estimated_value: int
    timestamp: datetime | None = None
    btc_conversion: Decimal | None = None


@dataclass(frozen=True)
class RecordResult:
    obligation: PaymentObligation
    recorded: int
    transition: Transition | None


class _ObligationLocks:
    """One lock per obligation id, dropped once no caller holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # obligation id -> (lock, number of callers holding or waiting)
        self._locks: dict[UUID, tuple[threading.Lock, int]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, obligation_id: UUID) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(obligation_id, (threading.Lock(), 0))
            self._locks[obligation_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                _, users = self._locks[obligation_id]
                if users == 1:
                    del self._locks[obligation_id]
                else:
                    self._locks[obligation_id] = (lock, users - 1)


class PaymentService:
    """Serialized read-modify-write operations on payment obligations.

    Each mutating operation holds the obligation's lock and runs in one
    database transaction (row-locked where the backend supports it).
    Transition side effects are dispatched once the transaction committed.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        lifecycle: PaymentLifecycle,
        rate_source: ExchangeRateSource,
        address_provider: AddressProvider,
        settings: PaymentSettings,
        converter: AmountConverter = BITCOIN,
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._rate_source = rate_source
        self._address_provider = address_provider
        self._settings = settings
        self._converter = converter
        self._locks = _ObligationLocks()

    def create(
        self,
        *,
        price: Decimal,
        reason: str,
        payable: PayableRef,
        currency: str | None = None,
    ) -> PaymentObligation:
        # Nothing is stored until the rate lookup and the address reservation succeeded.
        obligation = PaymentObligation.new(
            price=price,
            reason=reason,
            payable=payable,
            currency=currency,
            settings=self._settings,
            rate_source=self._rate_source,
            converter=self._converter,
        )
        obligation.assign_address(self._address_provider.reserve(obligation.id))
        with self._session_factory.begin() as session:
            obligation = PaymentObligationRepository(session).add(obligation)

        logger.info(
            "Created obligation %s for %s/%s: %s %s at %s",
            obligation.id,
            payable.payable_type,
            payable.payable_id,
            obligation.price,
            obligation.currency,
            obligation.address,
        )
        self._lifecycle.on_created(obligation)
        return obligation

    def record_transactions(
        self, obligation_id: UUID, observed: Iterable[ObservedTransaction]
    ) -> RecordResult:
        """Append newly observed transactions and re-evaluate the obligation.

        Appends, the recomputed cache and any state change commit together.
        Already recorded transaction hashes are ignored.
        """
        observed = list(observed)
        current_rate: Decimal | None = None
        if any(item.btc_conversion is None for item in observed):
            current_rate = self._rate_source.latest_rate(self._settings.crypto_kind).fiat_per_crypto

        with self._locks.hold(obligation_id):
            with self._session_factory.begin() as session:
                repo = PaymentObligationRepository(session)
                obligation = self._load_for_update(repo, obligation_id)

                recorded = 0
                for item in observed:
                    transaction = Transaction(
                        transaction_hash=item.transaction_hash,
                        estimated_value=item.estimated_value,
                        btc_conversion=item.btc_conversion if item.btc_conversion is not None else current_rate,
                        timestamp=item.timestamp or datetime.now(timezone.utc),
                    )
                    if obligation.ledger.append(transaction):
                        recorded += 1

                transition = None
                if recorded:
                    transition = obligation.on_new_transactions_observed(
                        self._rate_source, self._lifecycle, dispatch=False, converter=self._converter
                    )
                obligation = repo.save(obligation)

            self._lifecycle.dispatch(obligation, transition)

        return RecordResult(obligation=obligation, recorded=recorded, transition=transition)

    def refresh_crypto_amount_due(self, obligation_id: UUID) -> PaymentObligation:
        with self._locks.hold(obligation_id):
            with self._session_factory.begin() as session:
                repo = PaymentObligationRepository(session)
                obligation = self._load_for_update(repo, obligation_id)
                obligation.recompute_crypto_amount_due(
                    self._rate_source, crypto_kind=self._settings.crypto_kind, converter=self._converter
                )
                return repo.save(obligation)

    def comp(self, obligation_id: UUID, *, strict: bool = False) -> Transition | None:
        with self._locks.hold(obligation_id):
            with self._session_factory.begin() as session:
                repo = PaymentObligationRepository(session)
                obligation = self._load_for_update(repo, obligation_id)
                transition = self._lifecycle.fire(obligation, PaymentEvent.COMP, strict=strict)
                obligation = repo.save(obligation)

            self._lifecycle.dispatch(obligation, transition)
        return transition

    def get(self, obligation_id: UUID) -> PaymentObligation:
        with self._session_factory() as session:
            obligation = PaymentObligationRepository(session).get(obligation_id)
        if obligation is None:
            raise ObligationNotFound(obligation_id)
        return obligation

    def list(self, state: PaymentState | None = None) -> list[PaymentObligation]:
        with self._session_factory() as session:
            return PaymentObligationRepository(session).list(state=state)

    @staticmethod
    def _load_for_update(repo: PaymentObligationRepository, obligation_id: UUID) -> PaymentObligation:
        obligation = repo.get_for_update(obligation_id)
        if obligation is None:
            raise ObligationNotFound(obligation_id)
        return obligation


__all__ = ["ObligationNotFound", "ObservedTransaction", "PaymentService", "RecordResult"]
