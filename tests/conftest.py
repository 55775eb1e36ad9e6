from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from domain.lifecycle import PaymentLifecycle
from domain.settings import PaymentSettings
from tests.constants import ORDER_PAYABLE_TYPE, RATE
from tests.helpers.fakes import FixedRateSource, RecordingSettlementHandler, RecordingSubscriber

engine: Engine = create_engine(
    "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
session_factory = sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def test_session_factory() -> sessionmaker[Session]:
    return session_factory


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def rate_source() -> FixedRateSource:
    return FixedRateSource(rate=RATE)


@pytest.fixture(scope="function")
def subscriber() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture(scope="function")
def settlement_handler() -> RecordingSettlementHandler:
    return RecordingSettlementHandler()


@pytest.fixture(scope="function")
def settings() -> PaymentSettings:
    return PaymentSettings(default_currency="USD", crypto_kind="BTC", notifications_enabled=True)


@pytest.fixture(scope="function")
def lifecycle(
    settings: PaymentSettings, subscriber: RecordingSubscriber, settlement_handler: RecordingSettlementHandler
) -> PaymentLifecycle:
    return PaymentLifecycle(
        settings=settings,
        subscriber=subscriber,
        settlement_handlers={ORDER_PAYABLE_TYPE: settlement_handler},
    )
