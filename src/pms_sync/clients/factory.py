"""Per-share-class HRP client cache."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from ..config import PmsSettings
from ..models import ApiCredentials, ShareClass
from .hrp import HrpClient

logger = logging.getLogger("pms.clients.factory")

ClientBuilder = Callable[[ApiCredentials], HrpClient]


class HrpClientFactory:
    """Create HRP clients lazily from share class credentials and cache them.

    Entries are keyed by (share class name, credential fingerprint): rotating
    a share class's credentials produces a new key, and the stale client is
    closed and dropped the next time that share class asks for a client.
    """

    def __init__(
        self,
        settings: Optional[PmsSettings] = None,
        builder: Optional[ClientBuilder] = None,
    ):
        self._settings = settings
        self._builder = builder or self._build_client
        self._clients: dict[tuple[str, str], HrpClient] = {}

    def _build_client(self, credentials: ApiCredentials) -> HrpClient:
        settings = self._settings or PmsSettings()
        return HrpClient(
            credentials,
            auth_base_url=settings.hrp_auth_base_url,
            data_base_url=settings.hrp_data_base_url,
            default_audience=settings.hrp_default_audience,
            proxy_url=settings.proxy_url,
            timeout=settings.http_timeout_seconds,
        )

    async def get_client(self, share_class: ShareClass) -> HrpClient:
        """Return the cached client for a share class, creating it on first use.

        Raises:
            ConfigurationError: If the share class has no usable credentials
        """
        credentials = share_class.credentials()
        key = (share_class.name, credentials.fingerprint())
        client = self._clients.get(key)
        if client is not None:
            return client

        for stale_key in [k for k in self._clients if k[0] == share_class.name]:
            logger.info(f"Credentials changed for {share_class.name}, replacing HRP client")
            await self._clients.pop(stale_key).aclose()

        client = self._builder(credentials)
        self._clients[key] = client
        logger.debug(f"Created HRP client for {share_class.name}")
        return client

    async def clear_client(self, share_class_name: str) -> None:
        """Drop every cached client for a share class."""
        for key in [k for k in self._clients if k[0] == share_class_name]:
            await self._clients.pop(key).aclose()

    async def clear_all_clients(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    def active_share_classes(self) -> list[str]:
        return sorted({name for name, _ in self._clients})
