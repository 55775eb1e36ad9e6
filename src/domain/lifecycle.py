from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from .amounts import BITCOIN, AmountConverter
from .collaborators import NotificationError, SettlementHandlers, TransactionSubscriber
from .ledger import ObligationId
from .payments import PaymentObligation, PaymentState
from .settings import PaymentSettings

logger = logging.getLogger(__name__)


class PaymentEvent(StrEnum):
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    COMP = "comp"


# event -> (allowed source states, target state)
TRANSITIONS: dict[PaymentEvent, tuple[frozenset[PaymentState], PaymentState]] = {
    PaymentEvent.PAID: (
        frozenset({PaymentState.PENDING, PaymentState.PARTIAL_PAYMENT}),
        PaymentState.PAID_IN_FULL,
    ),
    PaymentEvent.PARTIALLY_PAID: (
        frozenset({PaymentState.PENDING}),
        PaymentState.PARTIAL_PAYMENT,
    ),
    PaymentEvent.COMP: (
        frozenset({PaymentState.PENDING, PaymentState.PARTIAL_PAYMENT}),
        PaymentState.COMPED,
    ),
}


class InvalidTransition(Exception):
    def __init__(self, *, obligation_id: ObligationId, event: PaymentEvent, state: PaymentState) -> None:
        super().__init__(f"No transition for event={event} from state={state} (obligation {obligation_id})")
        self.obligation_id = obligation_id
        self.event = event
        self.state = state


@dataclass(frozen=True)
class Transition:
    obligation_id: ObligationId
    event: PaymentEvent
    from_state: PaymentState
    to_state: PaymentState


class PaymentLifecycle:
    """Transition rules and side effects for payment obligations.

    `fire` and `evaluate` only change state. `dispatch` runs the side effects
    of a transition, so callers persisting the obligation can dispatch after
    their commit. `paid`, `partially_paid`, `comp` and `check_if_paid` do both.

    Side effects:
    - entering paid_in_full or comped calls the payable's settlement handler,
      if its payable type has one;
    - entering paid_in_full unsubscribes the receiving address when
      notifications are enabled.
    """

    def __init__(
        self,
        *,
        settings: PaymentSettings,
        subscriber: TransactionSubscriber | None = None,
        settlement_handlers: SettlementHandlers | None = None,
    ) -> None:
        if settings.notifications_enabled and subscriber is None:
            raise ValueError("a subscriber is required when notifications are enabled")
        self.settings = settings
        self._subscriber = subscriber
        self._settlement_handlers = dict(settlement_handlers or {})

    def fire(self, obligation: PaymentObligation, event: PaymentEvent, *, strict: bool = False) -> Transition | None:
        sources, target = TRANSITIONS[event]
        if obligation.state not in sources:
            if strict:
                raise InvalidTransition(obligation_id=obligation.id, event=event, state=obligation.state)
            logger.debug("Ignoring event %s for obligation %s in state %s", event, obligation.id, obligation.state)
            return None

        transition = Transition(
            obligation_id=obligation.id,
            event=event,
            from_state=obligation.state,
            to_state=target,
        )
        obligation.state = target
        logger.info("Obligation %s: %s -> %s on %s", obligation.id, transition.from_state, target, event)
        return transition

    def evaluate(self, obligation: PaymentObligation, converter: AmountConverter = BITCOIN) -> Transition | None:
        fiat_paid = obligation.fiat_amount_paid(converter)
        if fiat_paid >= obligation.price:
            return self.fire(obligation, PaymentEvent.PAID)
        if fiat_paid > 0:
            return self.fire(obligation, PaymentEvent.PARTIALLY_PAID)
        return None

    def dispatch(self, obligation: PaymentObligation, transition: Transition | None) -> None:
        if transition is None:
            return
        # Unsubscribe before the payable callback so a handler error cannot skip it.
        if transition.to_state == PaymentState.PAID_IN_FULL:
            self._unsubscribe(obligation)
        if transition.to_state in (PaymentState.PAID_IN_FULL, PaymentState.COMPED):
            self._notify_payable(obligation)

    def check_if_paid(self, obligation: PaymentObligation, converter: AmountConverter = BITCOIN) -> Transition | None:
        transition = self.evaluate(obligation, converter)
        self.dispatch(obligation, transition)
        return transition

    def paid(self, obligation: PaymentObligation, *, strict: bool = False) -> Transition | None:
        return self._fire_and_dispatch(obligation, PaymentEvent.PAID, strict=strict)

    def partially_paid(self, obligation: PaymentObligation, *, strict: bool = False) -> Transition | None:
        return self._fire_and_dispatch(obligation, PaymentEvent.PARTIALLY_PAID, strict=strict)

    def comp(self, obligation: PaymentObligation, *, strict: bool = False) -> Transition | None:
        return self._fire_and_dispatch(obligation, PaymentEvent.COMP, strict=strict)

    def on_created(self, obligation: PaymentObligation) -> None:
        if not self.settings.notifications_enabled or self._subscriber is None:
            return
        if obligation.address is None:
            raise ValueError(f"Obligation {obligation.id} has no receiving address to subscribe")
        try:
            self._subscriber.subscribe(obligation.address)
        except NotificationError as exc:
            logger.warning(
                "Failed to subscribe address %s for obligation %s: %s", obligation.address, obligation.id, exc
            )

    def _fire_and_dispatch(
        self, obligation: PaymentObligation, event: PaymentEvent, *, strict: bool
    ) -> Transition | None:
        transition = self.fire(obligation, event, strict=strict)
        self.dispatch(obligation, transition)
        return transition

    def _notify_payable(self, obligation: PaymentObligation) -> None:
        handler = self._settlement_handlers.get(obligation.payable.payable_type)
        if handler is None:
            logger.debug("No settlement handler for payable type %s", obligation.payable.payable_type)
            return
        handler.on_payment_settled(obligation.payable, obligation)

    def _unsubscribe(self, obligation: PaymentObligation) -> None:
        if not self.settings.notifications_enabled or self._subscriber is None or obligation.address is None:
            return
        try:
            self._subscriber.unsubscribe(obligation.address)
        except NotificationError as exc:
            logger.warning(
                "Failed to unsubscribe address %s for obligation %s: %s", obligation.address, obligation.id, exc
            )


__all__ = ["InvalidTransition", "PaymentEvent", "PaymentLifecycle", "TRANSITIONS", "Transition"]
