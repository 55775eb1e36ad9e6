from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from .amounts import BITCOIN, AmountConverter

logger = logging.getLogger(__name__)

ObligationId = NewType("ObligationId", UUID)
TransactionId = NewType("TransactionId", UUID)


class Transaction(BaseModel):
    """A payment received towards an obligation.

    `btc_conversion` is the fiat-per-major-unit rate in effect when the
    transaction was recorded. It is frozen and never refreshed.
    """

    model_config = ConfigDict(frozen=True)

    id: TransactionId = TransactionId(Field(default_factory=uuid4))
    transaction_hash: str
    estimated_value: int
    btc_conversion: Decimal
    timestamp: datetime

    @model_validator(mode="after")
    def _validate_fields(self) -> Transaction:
        if not self.transaction_hash:
            raise ValueError("transaction_hash must be non-empty")
        if self.estimated_value < 0:
            raise ValueError("estimated_value must be >= 0")
        if self.btc_conversion <= 0:
            raise ValueError("btc_conversion must be > 0")
        return self

    def fiat_value(self, converter: AmountConverter = BITCOIN) -> Decimal:
        return converter.to_major_unit(self.estimated_value) * self.btc_conversion


class TransactionLedger(BaseModel):
    """Append-only list of transactions received for one obligation."""

    transactions: list[Transaction] = Field(default_factory=list)

    _hashes: set[str] = PrivateAttr(default_factory=set)

    def model_post_init(self, __context: object) -> None:
        self._hashes = {tx.transaction_hash for tx in self.transactions}

    def append(self, transaction: Transaction) -> bool:
        """Add `transaction`, returning False if its hash is already recorded."""
        if transaction.transaction_hash in self._hashes:
            logger.info("Ignoring already recorded transaction %s", transaction.transaction_hash)
            return False
        self.transactions.append(transaction)
        self._hashes.add(transaction.transaction_hash)
        return True

    def contains(self, transaction_hash: str) -> bool:
        return transaction_hash in self._hashes

    def fiat_total(self, converter: AmountConverter = BITCOIN) -> Decimal:
        """Unrounded sum of each transaction at its own frozen rate."""
        return sum((tx.fiat_value(converter) for tx in self.transactions), start=Decimal(0))
