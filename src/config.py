from __future__ import annotations

from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///crypto_payments.db"
    default_currency: str = "USD"
    crypto_kind: str = "BTC"

    allow_webhooks: bool = False
    webhook_callback_url: str | None = None
    blockcypher_token: str | None = None
    blockcypher_chain: str = "btc/main"

    coindesk_api_key: str | None = None
    coindesk_market: str = "kraken"
    request_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="CRYPTO_PAYMENTS_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@cache
def config() -> AppSettings:
    return AppSettings()
