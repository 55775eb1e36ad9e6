from __future__ import annotations

import logging

from sqlalchemy.orm import Session, sessionmaker

from db.repositories import AddressPoolRepository
from domain.ledger import ObligationId

logger = logging.getLogger(__name__)


class AddressPoolExhausted(LookupError):
    pass


class PooledAddressProvider:
    """Hands out pre-generated receiving addresses, one per obligation.

    Reserving twice for the same obligation returns the same address.
    """

    def __init__(self, *, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def reserve(self, obligation_id: ObligationId) -> str:
        with self._session_factory.begin() as session:
            repo = AddressPoolRepository(session)
            existing = repo.reserved_for(obligation_id)
            if existing is not None:
                return existing
            address = repo.reserve_next(obligation_id)
        if address is None:
            raise AddressPoolExhausted(f"No receiving address left for obligation {obligation_id}")
        logger.info("Reserved address %s for obligation %s", address, obligation_id)
        return address

    def import_addresses(self, addresses: list[str]) -> int:
        with self._session_factory.begin() as session:
            return AddressPoolRepository(session).add_many(addresses)


__all__ = ["AddressPoolExhausted", "PooledAddressProvider"]
