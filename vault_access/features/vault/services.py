"""
Process-wide vault services.

Built once on application startup, stored on ``app.state.vault`` and closed
on shutdown. Routes reach them through ``get_vault_services``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vault_access.features.mirror.discovery import CacheFreshness, VaultDiscovery
from vault_access.features.mirror.sync import MetadataSync
from vault_access.features.vault.client import VaultApiConnector
from vault_access.features.vault.connector import RawListingConnector, RecordFetchConnector
from vault_access.utils import get_logger


log = get_logger(__name__)


@dataclass
class VaultServices:
    connector: RawListingConnector
    discovery: VaultDiscovery
    sync: MetadataSync

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        connector: Optional[RawListingConnector] = None,
        freshness: Optional[CacheFreshness] = None,
        **sync_options,
    ) -> "VaultServices":
        connector = connector or VaultApiConnector.from_config()
        return cls(
            connector=connector,
            discovery=VaultDiscovery(connector, freshness or CacheFreshness.from_config()),
            sync=MetadataSync(session_factory, connector, **sync_options),
        )

    @property
    def record_fetcher(self) -> Optional[RecordFetchConnector]:
        """The connector, if it can fetch single records (password reveal)."""
        if isinstance(self.connector, RecordFetchConnector):
            return self.connector
        return None

    async def aclose(self) -> None:
        await self.connector.aclose()


def get_vault_services(request: Request) -> VaultServices:
    services = getattr(request.app.state, "vault", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vault integration is not configured",
        )
    return services
