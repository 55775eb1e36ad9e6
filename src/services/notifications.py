from __future__ import annotations

import logging
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import AppSettings
from domain.collaborators import NotificationError, TransactionSubscriber

logger = logging.getLogger(__name__)


class BlockCypherSubscriber(TransactionSubscriber):
    """Registers BlockCypher webhooks for inbound transactions on an address."""

    EVENT = "unconfirmed-tx"

    def __init__(
        self,
        *,
        token: str,
        callback_url: str,
        chain: str = "btc/main",
        base_url: str = "https://api.blockcypher.com/v1",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1,
    ) -> None:
        if not token:
            raise ValueError("token must be provided")
        if not callback_url:
            raise ValueError("callback_url must be provided")

        self.token = token
        self.callback_url = callback_url
        self.hooks_url = f"{base_url.rstrip('/')}/{chain.strip('/')}/hooks"
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429, 502, 503, 504},
            allowed_methods=frozenset({"GET", "DELETE"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def subscribe(self, address: str) -> None:
        body = {"event": self.EVENT, "address": address, "url": self.callback_url}
        payload = self._request("POST", self.hooks_url, json=body)
        hook_id = payload.get("id") if isinstance(payload, dict) else None
        logger.info("Subscribed %s to BlockCypher hook %s", address, hook_id)

    def unsubscribe(self, address: str) -> None:
        hooks = self._request("GET", self.hooks_url)
        if not isinstance(hooks, list):
            raise NotificationError("BlockCypher returned unexpected hooks payload", payload=hooks)

        hook_ids = [
            hook["id"]
            for hook in hooks
            if isinstance(hook, dict) and hook.get("address") == address and hook.get("id") is not None
        ]
        for hook_id in hook_ids:
            self._request("DELETE", f"{self.hooks_url}/{hook_id}")
        logger.info("Unsubscribed %s from %d BlockCypher hook(s)", address, len(hook_ids))

    def _request(self, method: str, url: str, *, json: dict[str, Any] | None = None) -> Any:
        try:
            response = self._session.request(
                method, url, params={"token": self.token}, json=json, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload = self._extract_error(resp)
            raise NotificationError(message, status_code=getattr(resp, "status_code", None), payload=payload) from exc
        except requests.RequestException as exc:
            raise NotificationError("BlockCypher request failed") from exc

        if method == "DELETE" or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise NotificationError("BlockCypher returned invalid JSON", payload=response.text) from exc

    @staticmethod
    def _extract_error(response: Response | None) -> tuple[str, Any | None]:
        message = "BlockCypher request failed"
        payload: Any | None = None
        if response is None:
            return message, payload
        try:
            payload = response.json()
            if isinstance(payload, dict) and payload.get("error"):
                message = str(payload["error"])
        except ValueError:
            payload = response.text
        return message, payload


def build_subscriber(settings: AppSettings, *, session: requests.Session | None = None) -> TransactionSubscriber | None:
    """Resolve the subscriber once at startup; None when webhooks are disabled."""
    if not settings.allow_webhooks:
        return None
    if not settings.blockcypher_token or not settings.webhook_callback_url:
        raise ValueError("allow_webhooks requires blockcypher_token and webhook_callback_url")
    return BlockCypherSubscriber(
        token=settings.blockcypher_token,
        callback_url=settings.webhook_callback_url,
        chain=settings.blockcypher_chain,
        timeout=settings.request_timeout_seconds,
        session=session,
    )


__all__ = ["BlockCypherSubscriber", "build_subscriber"]
