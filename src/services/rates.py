from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from sqlalchemy.orm import Session, sessionmaker
from urllib3.util import Retry

from db.repositories import CurrencyConversionRepository
from domain.pricing import ExchangeRateSource, RateQuote, RateUnavailable

logger = logging.getLogger(__name__)


class CoinDeskAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


@dataclass(frozen=True)
class MinuteClose:
    timestamp: datetime
    instrument: str
    close: Decimal


class CoinDeskClient:
    """Minimal CoinDesk Data API client for the latest minute candle of a spot pair."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = "https://data-api.coindesk.com",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429, 502, 503, 504},
            allowed_methods={"GET"},
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_latest_minute(self, *, market: str, instrument: str, to_ts: int) -> MinuteClose | None:
        if not market:
            raise ValueError("market must be provided")
        if not instrument:
            raise ValueError("instrument must be provided")

        params = {
            "market": market,
            "instrument": instrument,
            "limit": 1,
            "aggregate": 1,
            "fill": "true",
            "response_format": "JSON",
            "to_ts": to_ts,
        }
        payload = self._request("GET", "/spot/v1/historical/minutes", params=params)
        entries = [self._parse_entry(entry) for entry in payload.get("Data") or []]
        if not entries:
            return None
        return max(entries, key=lambda entry: entry.timestamp)

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = self._session.request(method, url, params=params, timeout=self.timeout, headers=headers)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload_err = self._extract_error(resp)
            status_code = getattr(resp, "status_code", None)
            raise CoinDeskAPIError(message, status_code=status_code, payload=payload_err) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise CoinDeskAPIError("CoinDesk API request failed", status_code=status_code) from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise CoinDeskAPIError("CoinDesk API returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise CoinDeskAPIError("CoinDesk API returned unexpected payload type", payload=payload)

        err = payload.get("Err")
        if isinstance(err, dict) and err.get("message"):
            raise CoinDeskAPIError(err["message"], status_code=response.status_code, payload=payload)

        return payload

    @staticmethod
    def _parse_entry(entry: dict[str, Any]) -> MinuteClose:
        ts_raw = entry.get("TIMESTAMP")
        close_raw = entry.get("CLOSE")
        if ts_raw is None or close_raw is None:
            raise CoinDeskAPIError("CoinDesk histo entry missing TIMESTAMP or CLOSE field", payload=entry)
        return MinuteClose(
            timestamp=datetime.fromtimestamp(int(ts_raw), tz=timezone.utc),
            instrument=str(entry.get("INSTRUMENT", "")),
            close=Decimal(str(close_raw)),
        )

    @staticmethod
    def _extract_error(response: Response | None) -> tuple[str, Any | None]:
        message = "CoinDesk API request failed"
        payload: Any | None = None
        if response is None:
            return message, payload
        try:
            payload = response.json()
            err = payload.get("Err") if isinstance(payload, dict) else None
            if isinstance(err, dict) and err.get("message"):
                message = err["message"]
        except ValueError:
            payload = response.text
        return message, payload


class CoinDeskRateFeed:
    """Fetches the current crypto→fiat rate from CoinDesk spot candles."""

    def __init__(
        self,
        *,
        client: CoinDeskClient,
        market: str = "kraken",
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if not market:
            raise ValueError("market must be provided")
        self.client = client
        self.market = market
        self._now = now

    def fetch(self, crypto_kind: str, currency: str) -> RateQuote:
        instrument = f"{crypto_kind.upper()}-{currency.upper()}"
        candle = self.client.get_latest_minute(
            market=self.market, instrument=instrument, to_ts=int(self._now().timestamp())
        )
        if candle is None:
            raise RateUnavailable(f"No price data returned for {instrument} on {self.market}", crypto_kind=crypto_kind)
        if candle.close <= 0:
            raise CoinDeskAPIError(f"Non-positive close for {instrument}", payload=candle)
        return RateQuote(fiat_per_crypto=candle.close, as_of=candle.timestamp)


class StoredExchangeRateSource(ExchangeRateSource):
    """Serves the most recently recorded rate for one fiat currency."""

    def __init__(self, *, session_factory: sessionmaker[Session], currency: str) -> None:
        self._session_factory = session_factory
        self.currency = currency.upper()

    def latest_rate(self, crypto_kind: str) -> RateQuote:
        with self._session_factory() as session:
            quote = CurrencyConversionRepository(session).latest(crypto_kind=crypto_kind, currency=self.currency)
        if quote is None:
            raise RateUnavailable(
                f"No {crypto_kind.upper()}-{self.currency} rate has been recorded", crypto_kind=crypto_kind
            )
        return quote


class RateRefresher:
    def __init__(
        self,
        *,
        feed: CoinDeskRateFeed,
        session_factory: sessionmaker[Session],
        crypto_kind: str,
        currency: str,
    ) -> None:
        self.feed = feed
        self._session_factory = session_factory
        self.crypto_kind = crypto_kind.upper()
        self.currency = currency.upper()

    def refresh(self) -> RateQuote:
        quote = self.feed.fetch(self.crypto_kind, self.currency)
        with self._session_factory.begin() as session:
            CurrencyConversionRepository(session).record(
                crypto_kind=self.crypto_kind,
                currency=self.currency,
                rate=quote.fiat_per_crypto,
                as_of=quote.as_of,
            )
        logger.info(
            "Recorded %s-%s rate %s as of %s", self.crypto_kind, self.currency, quote.fiat_per_crypto, quote.as_of
        )
        return quote


__all__ = [
    "CoinDeskAPIError",
    "CoinDeskClient",
    "CoinDeskRateFeed",
    "MinuteClose",
    "RateRefresher",
    "StoredExchangeRateSource",
]
