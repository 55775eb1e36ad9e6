"""Domain models and rules for crypto-settled payment obligations.

This package contains the in-memory (Pydantic) models for obligations and
their transaction ledgers, the amount arithmetic and the lifecycle state
machine. They are independent from persistence models so that business logic
and testing can evolve without DB coupling.
"""

__all__ = [
    "amounts",
    "collaborators",
    "ledger",
    "lifecycle",
    "payments",
    "pricing",
    "settings",
]
