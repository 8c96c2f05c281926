"""1Token quote API client.

Every request is signed with HMAC-SHA256 over
``VERB + path + timestamp + body``, where ``path`` is relative to the API base
path and carries the URL-decoded query string. The key is the base64-decoded
API secret; the signature is sent base64-encoded in ``Api-Signature``.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from datetime import date
from typing import Any, Optional, Sequence
from urllib.parse import unquote, urlsplit

import httpx

from ..constants import Timeouts
from ..exceptions import ConfigurationError, ExternalApiError
from ..models import PriceQuote
from ..retry import API_RETRY_CONFIG, RetryConfig, retry_async
from ..utils import start_of_day, to_decimal
from .hrp import raise_for_api_status

logger = logging.getLogger("pms.clients.onetoken")

SERVICE = "1token"
LAST_PRICE_PATH = "/quote/last-price-before-timestamp"

_SYMBOL_FALLBACK = re.compile(r"[a-zA-Z]+")


def extract_symbol_from_contract(contract: str) -> Optional[str]:
    """``"index/btc.usd"`` -> ``"btc"``; falls back to the first run of letters."""
    parts = contract.split("/")
    if len(parts) >= 2:
        return parts[1].split(".")[0].lower() or None
    match = _SYMBOL_FALLBACK.search(contract)
    return match.group(0).lower() if match else None


def day_timestamp_ns(day: date) -> int:
    """Nanoseconds since the epoch at 00:00:00 UTC of ``day``."""
    return int(start_of_day(day).timestamp()) * 1_000_000_000


def sign_request(secret: str, verb: str, path: str, timestamp: int, body: str = "") -> str:
    try:
        key = base64.b64decode(secret)
    except ValueError as e:
        raise ConfigurationError("1Token API secret is not valid base64") from e
    message = f"{verb}{path}{timestamp}{body}".encode()
    return base64.b64encode(hmac.new(key, message, hashlib.sha256).digest()).decode()


class OneTokenClient:
    """Async client for the 1Token historical quote endpoint."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = "https://www.1tokencam.com/api/v1",
        proxy_url: Optional[str] = None,
        timeout: float = Timeouts.HTTP_DEFAULT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: RetryConfig = API_RETRY_CONFIG,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._base_url = base_url.rstrip("/")
        self._base_path = urlsplit(self._base_url).path.rstrip("/")
        self._retry_config = retry_config

        client_kwargs: dict[str, Any] = {
            "base_url": self._base_url,
            "timeout": httpx.Timeout(timeout, connect=Timeouts.HTTP_CONNECT),
            "headers": {"Content-Type": "application/json"},
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif proxy_url:
            client_kwargs["proxy"] = proxy_url
            logger.info("Configured SOCKS5 proxy for 1Token client")
        self._client = httpx.AsyncClient(**client_kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OneTokenClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _signed(self, request: httpx.Request) -> httpx.Request:
        timestamp = int(time.time())
        path = request.url.path
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path):]
        if request.url.query:
            path = f"{path}?{unquote(request.url.query.decode())}"
        body = request.content.decode() if request.content else ""

        request.headers["Api-Timestamp"] = str(timestamp)
        request.headers["Api-Key"] = self._api_key
        request.headers["Api-Signature"] = sign_request(
            self._api_secret, request.method.upper(), path, timestamp, body
        )
        return request

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        async def attempt() -> Any:
            # Re-signed per attempt so the timestamp stays fresh
            request = self._signed(self._client.build_request("GET", path, params=params))
            try:
                response = await self._client.send(request)
            except httpx.HTTPError as e:
                raise ExternalApiError(f"1Token request to {path} failed: {e}", SERVICE) from e
            raise_for_api_status(response, SERVICE)
            try:
                return response.json()
            except ValueError as e:
                raise ExternalApiError("1Token returned a non-JSON body", SERVICE, response.status_code) from e

        return await retry_async(attempt, config=self._retry_config)

    async def get_historical_prices(
        self, symbols: Sequence[str], exchange: str, day: date
    ) -> list[PriceQuote]:
        """Last USD price of each symbol before 00:00 UTC of ``day``."""
        params = {
            "currency": ",".join(symbols),
            "exchange": exchange,
            "timestamp": str(day_timestamp_ns(day)),
        }
        data = await self._get(LAST_PRICE_PATH, params)
        if not isinstance(data, list):
            logger.warning(f"Unexpected 1Token payload for {day.isoformat()}: {type(data).__name__}")
            return []

        quotes: list[PriceQuote] = []
        for item in data:
            contract = str(item.get("contract") or "")
            try:
                price = to_decimal(item.get("last"))
            except ValueError:
                logger.warning(f"Skipping 1Token quote with invalid price: {contract}")
                continue
            tm = item.get("tm")
            quotes.append(
                PriceQuote(
                    symbol=extract_symbol_from_contract(contract),
                    price=price,
                    contract=contract,
                    timestamp=int(tm) if tm is not None else None,
                    raw=dict(item),
                )
            )
        return quotes
