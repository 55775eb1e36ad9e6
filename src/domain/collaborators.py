from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, model_validator

from .ledger import ObligationId

if TYPE_CHECKING:
    from .payments import PaymentObligation


class PayableRef(BaseModel):
    """Reference to the entity that owns an obligation (an order, an invoice, ...)."""

    model_config = ConfigDict(frozen=True)

    payable_type: str
    payable_id: str

    @model_validator(mode="after")
    def _validate_fields(self) -> PayableRef:
        if not self.payable_type:
            raise ValueError("payable_type must be non-empty")
        if not self.payable_id:
            raise ValueError("payable_id must be non-empty")
        return self


class NotificationError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class AddressProvider(Protocol):
    def reserve(self, obligation_id: ObligationId) -> str: ...


class TransactionSubscriber(Protocol):
    """Watches receiving addresses for inbound transactions."""

    def subscribe(self, address: str) -> None: ...

    def unsubscribe(self, address: str) -> None: ...


class PaymentSettledHandler(Protocol):
    def on_payment_settled(self, payable: PayableRef, obligation: PaymentObligation) -> None: ...


# Payable types without an entry have no settlement callback.
SettlementHandlers = Mapping[str, PaymentSettledHandler]


__all__ = [
    "AddressProvider",
    "NotificationError",
    "PayableRef",
    "PaymentSettledHandler",
    "SettlementHandlers",
    "TransactionSubscriber",
]
