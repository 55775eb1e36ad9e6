from decimal import Decimal
from itertools import permutations

import pytest

from domain.lifecycle import InvalidTransition, PaymentEvent, PaymentLifecycle
from domain.payments import PaymentState
from domain.settings import PaymentSettings
from tests.constants import INVOICE, ORDER
from tests.helpers.builders import make_obligation, make_tx
from tests.helpers.fakes import RecordingSettlementHandler, RecordingSubscriber


def test_single_transaction_covering_price_pays_in_full(
    lifecycle: PaymentLifecycle, settlement_handler: RecordingSettlementHandler, subscriber: RecordingSubscriber
) -> None:
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(50_000_000, "250"))

    transition = lifecycle.check_if_paid(obligation)

    assert obligation.fiat_amount_paid() == Decimal("125")
    assert transition is not None
    assert (transition.from_state, transition.to_state) == (PaymentState.PENDING, PaymentState.PAID_IN_FULL)
    assert settlement_handler.settled == [(ORDER, "paid_in_full")]
    assert subscriber.unsubscribed == [obligation.address]


def test_partial_then_full_payment(lifecycle: PaymentLifecycle) -> None:
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(16_000_000, "250"))  # 40

    lifecycle.check_if_paid(obligation)
    assert obligation.state == PaymentState.PARTIAL_PAYMENT

    obligation.ledger.append(make_tx(26_000_000, "250"))  # 65, cumulative 105
    lifecycle.check_if_paid(obligation)
    assert obligation.state == PaymentState.PAID_IN_FULL


def test_nothing_paid_is_a_no_op(lifecycle: PaymentLifecycle, settlement_handler: RecordingSettlementHandler) -> None:
    obligation = make_obligation("100")

    assert lifecycle.check_if_paid(obligation) is None
    assert obligation.state == PaymentState.PENDING
    assert settlement_handler.settled == []


@pytest.mark.parametrize("order", list(permutations(range(3))))
def test_paid_in_full_regardless_of_transaction_order(lifecycle: PaymentLifecycle, order: tuple[int, ...]) -> None:
    transactions = [make_tx(8_000_000, "250"), make_tx(10_000_000, "300"), make_tx(25_000_000, "200")]
    obligation = make_obligation("100")

    for index in order:
        obligation.ledger.append(transactions[index])
        lifecycle.check_if_paid(obligation)

    assert obligation.state == PaymentState.PAID_IN_FULL


def test_check_if_paid_is_idempotent(
    lifecycle: PaymentLifecycle, settlement_handler: RecordingSettlementHandler, subscriber: RecordingSubscriber
) -> None:
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(50_000_000, "250"))

    assert lifecycle.check_if_paid(obligation) is not None
    assert lifecycle.check_if_paid(obligation) is None

    assert obligation.state == PaymentState.PAID_IN_FULL
    assert len(settlement_handler.settled) == 1
    assert len(subscriber.unsubscribed) == 1


@pytest.mark.parametrize("paid_satoshis", [0, 16_000_000])
def test_comp_from_pending_or_partial(
    lifecycle: PaymentLifecycle,
    settlement_handler: RecordingSettlementHandler,
    subscriber: RecordingSubscriber,
    paid_satoshis: int,
) -> None:
    obligation = make_obligation("100")
    if paid_satoshis:
        obligation.ledger.append(make_tx(paid_satoshis, "250"))
        lifecycle.check_if_paid(obligation)
    paid_before = obligation.fiat_amount_paid()

    transition = lifecycle.comp(obligation)

    assert transition is not None
    assert obligation.state == PaymentState.COMPED
    assert obligation.fiat_amount_paid() == paid_before
    assert settlement_handler.settled == [(ORDER, "comped")]
    # Comping keeps watching the address; only a full payment unsubscribes.
    assert subscriber.unsubscribed == []


@pytest.mark.parametrize("settle", ["paid", "comp"])
def test_settled_obligation_does_not_regress(lifecycle: PaymentLifecycle, settle: str) -> None:
    obligation = make_obligation("100")
    if settle == "paid":
        obligation.ledger.append(make_tx(50_000_000, "250"))
        lifecycle.check_if_paid(obligation)
    else:
        lifecycle.comp(obligation)
    settled_state = obligation.state

    assert lifecycle.partially_paid(obligation) is None
    obligation.ledger.append(make_tx(1_000_000, "250"))
    assert lifecycle.check_if_paid(obligation) is None
    assert obligation.state == settled_state


def test_paid_in_full_cannot_be_comped(lifecycle: PaymentLifecycle) -> None:
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(50_000_000, "250"))
    lifecycle.check_if_paid(obligation)

    assert lifecycle.comp(obligation) is None
    assert obligation.state == PaymentState.PAID_IN_FULL


def test_strict_fire_raises_for_missing_rule(lifecycle: PaymentLifecycle) -> None:
    obligation = make_obligation("100")
    lifecycle.comp(obligation)

    with pytest.raises(InvalidTransition) as exc_info:
        lifecycle.fire(obligation, PaymentEvent.PARTIALLY_PAID, strict=True)

    assert exc_info.value.state == PaymentState.COMPED
    assert exc_info.value.event == PaymentEvent.PARTIALLY_PAID


def test_payable_without_settlement_handler_is_skipped(
    lifecycle: PaymentLifecycle, settlement_handler: RecordingSettlementHandler
) -> None:
    obligation = make_obligation("100", payable=INVOICE)

    assert lifecycle.comp(obligation) is not None
    assert obligation.state == PaymentState.COMPED
    assert settlement_handler.settled == []


def test_fire_only_changes_state_until_dispatched(
    lifecycle: PaymentLifecycle, settlement_handler: RecordingSettlementHandler
) -> None:
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(50_000_000, "250"))

    transition = lifecycle.evaluate(obligation)
    assert obligation.state == PaymentState.PAID_IN_FULL
    assert settlement_handler.settled == []

    lifecycle.dispatch(obligation, transition)
    assert settlement_handler.settled == [(ORDER, "paid_in_full")]


def test_notification_failures_do_not_block_transitions(settlement_handler: RecordingSettlementHandler) -> None:
    subscriber = RecordingSubscriber(fail=True)
    lifecycle = PaymentLifecycle(
        settings=PaymentSettings(notifications_enabled=True),
        subscriber=subscriber,
        settlement_handlers={ORDER.payable_type: settlement_handler},
    )
    obligation = make_obligation("100")
    lifecycle.on_created(obligation)
    obligation.ledger.append(make_tx(50_000_000, "250"))

    lifecycle.check_if_paid(obligation)

    assert obligation.state == PaymentState.PAID_IN_FULL
    assert settlement_handler.settled == [(ORDER, "paid_in_full")]


def test_subscriptions_only_when_enabled() -> None:
    subscriber = RecordingSubscriber()
    lifecycle = PaymentLifecycle(settings=PaymentSettings(notifications_enabled=False), subscriber=subscriber)
    obligation = make_obligation("100")

    lifecycle.on_created(obligation)
    obligation.ledger.append(make_tx(50_000_000, "250"))
    lifecycle.check_if_paid(obligation)

    assert obligation.state == PaymentState.PAID_IN_FULL
    assert subscriber.subscribed == []
    assert subscriber.unsubscribed == []


def test_on_created_subscribes_address(lifecycle: PaymentLifecycle, subscriber: RecordingSubscriber) -> None:
    obligation = make_obligation("100", address="bc1qwatch")

    lifecycle.on_created(obligation)

    assert subscriber.subscribed == ["bc1qwatch"]


def test_enabled_notifications_require_a_subscriber() -> None:
    with pytest.raises(ValueError):
        PaymentLifecycle(settings=PaymentSettings(notifications_enabled=True))


def test_failing_settlement_handler_still_unsubscribes(subscriber: RecordingSubscriber) -> None:
    lifecycle = PaymentLifecycle(
        settings=PaymentSettings(notifications_enabled=True),
        subscriber=subscriber,
        settlement_handlers={ORDER.payable_type: RecordingSettlementHandler(fail=True)},
    )
    obligation = make_obligation("100")
    obligation.ledger.append(make_tx(50_000_000, "250"))

    with pytest.raises(RuntimeError):
        lifecycle.check_if_paid(obligation)

    assert obligation.state == PaymentState.PAID_IN_FULL
    assert subscriber.unsubscribed == [obligation.address]
