"""
Vault connector capabilities.

Components declare which capability they need and check it once, when they
are constructed. A connector opts in by subclassing the capability.
"""
import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from vault_access.core.exceptions import CapabilityMissing


@dataclass(frozen=True)
class VaultRecord:
    """JSON:API resource object."""
    id: str
    type: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ListResponse:
    records: List[VaultRecord]
    current_page: int = 1
    total_pages: int = 1
    total_count: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.current_page < self.total_pages


class RawListingConnector(abc.ABC):
    """Can issue paginated JSON:API list requests against arbitrary paths."""

    @abc.abstractmethod
    async def request_list_raw(
        self,
        path: str,
        *,
        page: int = 1,
        page_size: int = 50,
        filters: Optional[Dict[str, str]] = None,
        sort: Optional[str] = None,
    ) -> ListResponse:
        ...

    async def aclose(self) -> None:
        return None


class RecordFetchConnector(abc.ABC):
    """Can fetch a single JSON:API resource, including sensitive attributes."""

    @abc.abstractmethod
    async def request_single_raw(self, path: str) -> VaultRecord:
        ...


def require_capability(connector: Any, capability: type, component: str):
    """Return ``connector`` or raise if it does not declare ``capability``."""
    if not isinstance(connector, capability):
        raise CapabilityMissing(
            f"{component} requires a connector implementing {capability.__name__}, "
            f"got {type(connector).__name__}"
        )
    return connector


async def paginate(
    connector: RawListingConnector,
    path: str,
    *,
    filters: Optional[Dict[str, str]] = None,
    sort: Optional[str] = None,
    page_size: int = 200,
    delay_ms: int = 0,
) -> AsyncIterator[List[VaultRecord]]:
    """Yield each page of a list endpoint until the last page."""
    page = 1
    while True:
        response = await connector.request_list_raw(
            path, page=page, page_size=page_size, filters=filters, sort=sort
        )
        yield response.records
        if not response.has_more:
            break
        page += 1
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)
