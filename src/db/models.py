from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class PaymentObligationOrm(Base):
    __tablename__ = "payment_obligations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False)
    crypto_amount_due: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    btc_conversion: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    payable_type: Mapped[str] = mapped_column(String, nullable=False)
    payable_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    transactions: Mapped[list["PaymentTransactionOrm"]] = relationship(
        cascade="all, delete-orphan",
        back_populates="obligation",
        lazy="selectin",
        order_by="PaymentTransactionOrm.timestamp",
    )

    __table_args__ = (Index("ix_payment_obligations_payable", "payable_type", "payable_id"),)


class PaymentTransactionOrm(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    obligation_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("payment_obligations.id"), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String, nullable=False)
    estimated_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    btc_conversion: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    obligation: Mapped[PaymentObligationOrm] = relationship(back_populates="transactions")

    __table_args__ = (UniqueConstraint("obligation_id", "transaction_hash", name="uq_payment_tx_hash"),)


class CurrencyConversionOrm(Base):
    __tablename__ = "currency_conversions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    crypto_kind: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    as_of: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_currency_conversions_pair_as_of", "crypto_kind", "currency", "as_of"),)


class ReceivingAddressOrm(Base):
    __tablename__ = "receiving_addresses"

    address: Mapped[str] = mapped_column(String, primary_key=True)
    obligation_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
