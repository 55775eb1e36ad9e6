from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Sequence
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings, config
from db.db import init_db
from domain.collaborators import PayableRef, SettlementHandlers
from domain.lifecycle import PaymentLifecycle
from domain.payments import PaymentObligation, PaymentState
from domain.settings import PaymentSettings
from services.addresses import PooledAddressProvider
from services.notifications import build_subscriber
from services.payment_service import ObservedTransaction, PaymentService
from services.rates import CoinDeskClient, CoinDeskRateFeed, RateRefresher, StoredExchangeRateSource


@dataclass(frozen=True)
class App:
    session_factory: sessionmaker[Session]
    payments: PaymentService
    addresses: PooledAddressProvider
    rate_refresher: RateRefresher


def build_app(settings: AppSettings, *, settlement_handlers: SettlementHandlers | None = None) -> App:
    payment_settings = PaymentSettings.from_app_settings(settings)
    session_factory = init_db(settings.database_url)

    lifecycle = PaymentLifecycle(
        settings=payment_settings,
        subscriber=build_subscriber(settings),
        settlement_handlers=settlement_handlers,
    )
    rate_source = StoredExchangeRateSource(session_factory=session_factory, currency=payment_settings.default_currency)
    addresses = PooledAddressProvider(session_factory=session_factory)
    payments = PaymentService(
        session_factory=session_factory,
        lifecycle=lifecycle,
        rate_source=rate_source,
        address_provider=addresses,
        settings=payment_settings,
    )
    feed = CoinDeskRateFeed(
        client=CoinDeskClient(api_key=settings.coindesk_api_key, timeout=settings.request_timeout_seconds),
        market=settings.coindesk_market,
    )
    refresher = RateRefresher(
        feed=feed,
        session_factory=session_factory,
        crypto_kind=payment_settings.crypto_kind,
        currency=payment_settings.default_currency,
    )
    return App(session_factory=session_factory, payments=payments, addresses=addresses, rate_refresher=refresher)


def print_obligation(obligation: PaymentObligation) -> None:
    print(f"Obligation {obligation.id}")
    print(f"  Payable:        {obligation.payable.payable_type}/{obligation.payable.payable_id}")
    print(f"  Reason:         {obligation.reason}")
    print(f"  State:          {obligation.state}")
    print(f"  Settled:        {'yes' if obligation.is_settled else 'no'}")
    print(f"  Price:          {obligation.price} {obligation.currency}")
    print(f"  Paid:           {obligation.fiat_amount_paid()} {obligation.currency}")
    print(f"  Due:            {obligation.fiat_amount_due()} {obligation.currency}")
    print(f"  Crypto due:     {obligation.crypto_amount_due} (at {obligation.btc_conversion})")
    print(f"  Address:        {obligation.address}")
    print(f"  Transactions:   {len(obligation.ledger.transactions)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track fiat obligations settled in crypto.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a payment obligation.")
    create.add_argument("--price", type=Decimal, required=True)
    create.add_argument("--reason", required=True)
    create.add_argument("--payable-type", required=True)
    create.add_argument("--payable-id", required=True)
    create.add_argument("--currency")

    record = commands.add_parser("record-tx", help="Record an inbound transaction.")
    record.add_argument("obligation_id", type=UUID)
    record.add_argument("--hash", dest="transaction_hash", required=True)
    record.add_argument("--value", type=int, required=True, help="Amount in the smallest crypto unit.")
    record.add_argument("--rate", type=Decimal, help="Frozen fiat-per-crypto rate; defaults to the latest one.")

    comp = commands.add_parser("comp", help="Mark an obligation settled without payment.")
    comp.add_argument("obligation_id", type=UUID)

    show = commands.add_parser("show", help="Show one obligation, or list them.")
    show.add_argument("obligation_id", type=UUID, nargs="?")
    show.add_argument("--state", type=PaymentState, choices=list(PaymentState))

    commands.add_parser("refresh-rate", help="Record the latest exchange rate.")

    add_addresses = commands.add_parser("add-addresses", help="Import receiving addresses, one per line.")
    add_addresses.add_argument("path", type=Path)
    return parser


def run(args: argparse.Namespace, app: App) -> None:
    if args.command == "create":
        payable = PayableRef(payable_type=args.payable_type, payable_id=args.payable_id)
        obligation = app.payments.create(price=args.price, reason=args.reason, payable=payable, currency=args.currency)
        print_obligation(obligation)
    elif args.command == "record-tx":
        observed = ObservedTransaction(
            transaction_hash=args.transaction_hash,
            estimated_value=args.value,
            btc_conversion=args.rate,
        )
        result = app.payments.record_transactions(args.obligation_id, [observed])
        print(f"Recorded {result.recorded} new transaction(s)")
        print_obligation(result.obligation)
    elif args.command == "comp":
        transition = app.payments.comp(args.obligation_id)
        if transition is None:
            print("No transition: obligation cannot be comped in its current state")
        print_obligation(app.payments.get(args.obligation_id))
    elif args.command == "show":
        if args.obligation_id is not None:
            print_obligation(app.payments.get(args.obligation_id))
        else:
            for obligation in app.payments.list(state=args.state):
                print_obligation(obligation)
    elif args.command == "refresh-rate":
        quote = app.rate_refresher.refresh()
        print(f"Rate: {quote.fiat_per_crypto} as of {quote.as_of.isoformat()}")
    elif args.command == "add-addresses":
        lines = args.path.read_text(encoding="utf-8").splitlines()
        added = app.addresses.import_addresses(lines)
        print(f"Imported {added} new address(es)")


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    run(args, build_app(config()))


if __name__ == "__main__":
    main()
