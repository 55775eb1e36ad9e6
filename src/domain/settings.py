from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from config import AppSettings


@dataclass(frozen=True)
class PaymentSettings:
    default_currency: str = "USD"
    crypto_kind: str = "BTC"
    notifications_enabled: bool = False

    def __post_init__(self) -> None:
        code = self.default_currency
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"default_currency must be a 3-letter code, got {code!r}")
        object.__setattr__(self, "default_currency", code.upper())
        object.__setattr__(self, "crypto_kind", self.crypto_kind.upper())

    @classmethod
    def from_app_settings(cls, settings: AppSettings) -> PaymentSettings:
        return cls(
            default_currency=settings.default_currency,
            crypto_kind=settings.crypto_kind,
            notifications_enabled=settings.allow_webhooks,
        )
