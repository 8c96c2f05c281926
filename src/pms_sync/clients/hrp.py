"""Prime-broker (HRP) account-activity API client.

Handles the OAuth2 client-credentials flow, caches the access token until
shortly before it expires, and follows ``next_page`` links when listing
transfer events. Optional SOCKS5 proxy support goes through httpx.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from ..constants import Defaults, Timeouts
from ..exceptions import AuthenticationError, ExternalApiError, RateLimitError
from ..models import ApiCredentials, HrpAccount, TransferDirection, TransferEvent
from ..retry import API_RETRY_CONFIG, RetryConfig, retry_async

logger = logging.getLogger("pms.clients.hrp")

SERVICE = "hrp"
ACCOUNTS_PATH = "/v0/accountactivity/accounts"
TRANSFER_PATHS = {
    TransferDirection.DEPOSIT: "/v0/accountactivity/transfers/deposits",
    TransferDirection.WITHDRAWAL: "/v0/accountactivity/transfers/withdrawals",
}
DEFAULT_MAX_PAGES = 1000


def format_api_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def raise_for_api_status(response: httpx.Response, service: str) -> None:
    """Map an error response onto the ExternalApiError family."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:500]
    if status in (401, 403):
        raise AuthenticationError(f"{service} rejected credentials: {detail}", service, status)
    if status == 429:
        raise RateLimitError(f"{service} rate limit exceeded", service, status)
    raise ExternalApiError(f"{service} request failed with {status}: {detail}", service, status)


class HrpClient:
    """Async HTTP client for one set of prime-broker credentials."""

    def __init__(
        self,
        credentials: ApiCredentials,
        *,
        auth_base_url: str = "https://auth.hiddenroad.com",
        data_base_url: str = "https://api.hiddenroad.com",
        default_audience: str = Defaults.HRP_AUDIENCE,
        proxy_url: Optional[str] = None,
        timeout: float = Timeouts.HTTP_DEFAULT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: RetryConfig = API_RETRY_CONFIG,
        max_pages: int = DEFAULT_MAX_PAGES,
    ):
        self._credentials = credentials
        self._auth_base_url = auth_base_url.rstrip("/")
        self._data_base_url = data_base_url.rstrip("/")
        self._audience = credentials.audience or default_audience
        self._retry_config = retry_config
        self._max_pages = max_pages

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_scope: Optional[str] = None

        client_kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(timeout, connect=Timeouts.HTTP_CONNECT),
            "headers": {"Content-Type": "application/json"},
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif proxy_url:
            client_kwargs["proxy"] = proxy_url
            logger.info("Configured SOCKS5 proxy for HRP client")
        self._client = httpx.AsyncClient(**client_kwargs)

    @property
    def credentials(self) -> ApiCredentials:
        return self._credentials

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HrpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _token_valid(self) -> bool:
        return (
            self._access_token is not None
            and self._token_expires_at > time.time() + Timeouts.TOKEN_REFRESH_BUFFER
        )

    async def get_access_token(self) -> str:
        """Return a cached token, fetching a new one when it is close to expiry."""
        if self._token_valid():
            return self._access_token  # type: ignore[return-value]

        logger.info("Fetching HRP access token")
        payload = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "audience": self._audience,
            "grant_type": "client_credentials",
        }
        data = await self._send("POST", f"{self._auth_base_url}/oauth/token", json=payload)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("HRP authentication returned no access token", SERVICE)

        expires_in = float(data.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = time.time() + expires_in
        self._token_scope = data.get("scope")
        logger.info("Obtained HRP access token", extra={"expires_in": expires_in})
        return token

    def clear_token(self) -> None:
        """Force a token refresh on the next request."""
        self._access_token = None
        self._token_expires_at = 0.0

    def token_info(self) -> Optional[dict[str, Any]]:
        if self._access_token is None:
            return None
        return {"expires_at": self._token_expires_at, "scope": self._token_scope}

    # ------------------------------------------------------------------
    # Low-level HTTP
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        async def attempt() -> Any:
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                raise ExternalApiError(f"HRP request to {url} failed: {e}", SERVICE) from e
            raise_for_api_status(response, SERVICE)
            try:
                return response.json()
            except ValueError as e:
                raise ExternalApiError("HRP returned a non-JSON body", SERVICE, response.status_code) from e

        return await retry_async(attempt, config=self._retry_config)

    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        token = await self.get_access_token()
        try:
            data = await self._send(
                "GET", url, params=params, headers={"Authorization": f"Bearer {token}"}
            )
        except AuthenticationError:
            self.clear_token()
            raise
        if not isinstance(data, dict) or "results" not in data:
            raise ExternalApiError("Invalid response format: missing results", SERVICE)
        return data

    async def _get_all_pages(self, path: str, params: dict[str, Any], label: str) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        data = await self._get(f"{self._data_base_url}{path}", params)
        results.extend(data["results"])
        next_page = data.get("next_page")
        pages = 1

        while next_page and pages < self._max_pages:
            data = await self._get(f"{self._data_base_url}{next_page}")
            results.extend(data["results"])
            next_page = data.get("next_page")
            pages += 1

        if next_page:
            logger.warning(f"Reached maximum page limit ({self._max_pages}) for {label}, stopping pagination")
        logger.debug(f"Fetched {len(results)} {label} in {pages} page(s)")
        return results

    # ------------------------------------------------------------------
    # Account activity
    # ------------------------------------------------------------------

    async def list_accounts(self) -> list[HrpAccount]:
        data = await self._get(f"{self._data_base_url}{ACCOUNTS_PATH}")
        return [
            HrpAccount(account=str(item.get("account", "")), venue=str(item.get("venue", "")))
            for item in data["results"]
        ]

    async def fetch_transfers(
        self,
        direction: TransferDirection,
        *,
        venue: str,
        account: str,
        start: datetime,
        end: datetime,
        page_size: int = Defaults.TRANSFER_BATCH_SIZE,
    ) -> list[TransferEvent]:
        """All events for one account in ``[start, end)``, following pagination."""
        params = {
            "venue": venue,
            "account": account,
            "start_event_timestamp_inclusive": format_api_timestamp(start),
            "end_event_timestamp_exclusive": format_api_timestamp(end),
            "page_size": page_size,
        }
        items = await self._get_all_pages(TRANSFER_PATHS[direction], params, f"{direction.value}s")
        return [TransferEvent.from_api(item) for item in items]

    async def fetch_deposits(self, **kwargs: Any) -> list[TransferEvent]:
        return await self.fetch_transfers(TransferDirection.DEPOSIT, **kwargs)

    async def fetch_withdrawals(self, **kwargs: Any) -> list[TransferEvent]:
        return await self.fetch_transfers(TransferDirection.WITHDRAWAL, **kwargs)
