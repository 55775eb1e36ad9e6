from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from db import models
from domain.collaborators import PayableRef
from domain.ledger import ObligationId, Transaction, TransactionLedger
from domain.payments import AddressAlreadyAssigned, PaymentObligation, PaymentState
from domain.pricing import RateQuote


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp


class PaymentObligationRepository:
    """Maps obligations and their ledgers to rows.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, obligation: PaymentObligation) -> PaymentObligation:
        orm_obligation = models.PaymentObligationOrm(
            id=obligation.id,
            price=obligation.price,
            currency=obligation.currency,
            reason=obligation.reason,
            payable_type=obligation.payable.payable_type,
            payable_id=obligation.payable.payable_id,
            created_at=obligation.created_at,
        )
        self._apply(orm_obligation, obligation)
        self._session.add(orm_obligation)
        self._session.flush()
        return self._to_domain(orm_obligation)

    def get(self, obligation_id: UUID) -> PaymentObligation | None:
        orm_obligation = self._session.get(models.PaymentObligationOrm, obligation_id)
        if orm_obligation is None:
            return None
        return self._to_domain(orm_obligation)

    def get_for_update(self, obligation_id: UUID) -> PaymentObligation | None:
        """Load and row-lock an obligation on backends supporting SELECT ... FOR UPDATE."""
        stmt = (
            select(models.PaymentObligationOrm)
            .where(models.PaymentObligationOrm.id == obligation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        orm_obligation = self._session.scalars(stmt).one_or_none()
        if orm_obligation is None:
            return None
        return self._to_domain(orm_obligation)

    def save(self, obligation: PaymentObligation) -> PaymentObligation:
        orm_obligation = self._session.get(models.PaymentObligationOrm, obligation.id)
        if orm_obligation is None:
            return self.add(obligation)
        self._apply(orm_obligation, obligation)
        self._session.flush()
        return self._to_domain(orm_obligation)

    def list(self, state: PaymentState | None = None) -> list[PaymentObligation]:
        stmt = select(models.PaymentObligationOrm).order_by(models.PaymentObligationOrm.created_at.asc())
        if state is not None:
            stmt = stmt.where(models.PaymentObligationOrm.state == state.value)
        return [self._to_domain(row) for row in self._session.scalars(stmt).all()]

    @staticmethod
    def _apply(orm_obligation: models.PaymentObligationOrm, obligation: PaymentObligation) -> None:
        # Price, currency, reason and payable are written once, by `add`.
        if orm_obligation.address is not None and orm_obligation.address != obligation.address:
            raise AddressAlreadyAssigned(obligation.id, orm_obligation.address)
        orm_obligation.state = obligation.state.value
        orm_obligation.crypto_amount_due = obligation.crypto_amount_due
        orm_obligation.btc_conversion = obligation.btc_conversion
        orm_obligation.address = obligation.address

        # The ledger is append-only: only rows not yet stored are added.
        stored_ids = {tx.id for tx in orm_obligation.transactions}
        for tx in obligation.ledger.transactions:
            if tx.id in stored_ids:
                continue
            orm_obligation.transactions.append(
                models.PaymentTransactionOrm(
                    id=tx.id,
                    transaction_hash=tx.transaction_hash,
                    estimated_value=tx.estimated_value,
                    btc_conversion=tx.btc_conversion,
                    timestamp=tx.timestamp,
                )
            )

    @staticmethod
    def _to_domain(orm_obligation: models.PaymentObligationOrm) -> PaymentObligation:
        transactions = [
            Transaction(
                id=tx.id,
                transaction_hash=tx.transaction_hash,
                estimated_value=tx.estimated_value,
                btc_conversion=tx.btc_conversion,
                timestamp=_as_utc(tx.timestamp),
            )
            for tx in sorted(orm_obligation.transactions, key=lambda row: _as_utc(row.timestamp))
        ]
        return PaymentObligation(
            id=ObligationId(orm_obligation.id),
            price=orm_obligation.price,
            currency=orm_obligation.currency,
            reason=orm_obligation.reason,
            payable=PayableRef(payable_type=orm_obligation.payable_type, payable_id=orm_obligation.payable_id),
            state=PaymentState(orm_obligation.state),
            crypto_amount_due=orm_obligation.crypto_amount_due,
            btc_conversion=orm_obligation.btc_conversion,
            address=orm_obligation.address,
            ledger=TransactionLedger(transactions=transactions),
            created_at=_as_utc(orm_obligation.created_at),
        )


class CurrencyConversionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def record(self, *, crypto_kind: str, currency: str, rate: Decimal, as_of: datetime) -> RateQuote:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        row = models.CurrencyConversionOrm(
            crypto_kind=crypto_kind.upper(),
            currency=currency.upper(),
            rate=rate,
            as_of=as_of,
        )
        self._session.add(row)
        self._session.flush()
        return RateQuote(fiat_per_crypto=row.rate, as_of=_as_utc(row.as_of))

    def latest(self, *, crypto_kind: str, currency: str) -> RateQuote | None:
        stmt = (
            select(models.CurrencyConversionOrm)
            .where(
                models.CurrencyConversionOrm.crypto_kind == crypto_kind.upper(),
                models.CurrencyConversionOrm.currency == currency.upper(),
            )
            .order_by(models.CurrencyConversionOrm.as_of.desc())
            .limit(1)
        )
        row = self._session.scalars(stmt).first()
        if row is None:
            return None
        return RateQuote(fiat_per_crypto=row.rate, as_of=_as_utc(row.as_of))


class AddressPoolRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add_many(self, addresses: Iterable[str]) -> int:
        """Store new unassigned addresses, skipping known ones. Returns how many were added."""
        wanted = {address.strip() for address in addresses if address.strip()}
        if not wanted:
            return 0
        known = set(
            self._session.scalars(
                select(models.ReceivingAddressOrm.address).where(models.ReceivingAddressOrm.address.in_(wanted))
            ).all()
        )
        new_addresses = sorted(wanted - known)
        self._session.add_all(models.ReceivingAddressOrm(address=address) for address in new_addresses)
        self._session.flush()
        return len(new_addresses)

    def reserved_for(self, obligation_id: UUID) -> str | None:
        stmt = select(models.ReceivingAddressOrm.address).where(
            models.ReceivingAddressOrm.obligation_id == obligation_id
        )
        return self._session.scalars(stmt).first()

    def reserve_next(self, obligation_id: UUID) -> str | None:
        stmt = (
            select(models.ReceivingAddressOrm)
            .where(models.ReceivingAddressOrm.obligation_id.is_(None))
            .order_by(models.ReceivingAddressOrm.address.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        row = self._session.scalars(stmt).first()
        if row is None:
            return None
        row.obligation_id = obligation_id
        row.reserved_at = datetime.now(timezone.utc)
        self._session.flush()
        return row.address

    def count_available(self) -> int:
        stmt = select(models.ReceivingAddressOrm.address).where(models.ReceivingAddressOrm.obligation_id.is_(None))
        return len(self._session.scalars(stmt).all())
