"""
HTTP connector for the documentation vault's JSON:API.

Auth: API key in the ``x-api-key`` header.
Format: JSON:API ({data, meta, included} envelope).
"""
from typing import Any, Dict, Optional

import httpx

from vault_access.core import config
from vault_access.core.exceptions import UpstreamFailure
from vault_access.features.vault.connector import (
    ListResponse,
    RawListingConnector,
    RecordFetchConnector,
    VaultRecord,
)
from vault_access.utils import get_logger


log = get_logger(__name__)

MAX_PAGE_SIZE = 1000


def _record(data: Dict[str, Any]) -> VaultRecord:
    return VaultRecord(
        id=str(data["id"]),
        type=data.get("type", ""),
        attributes=data.get("attributes") or {},
    )


class VaultApiConnector(RawListingConnector, RecordFetchConnector):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "x-api-key": api_key,
                "Content-Type": "application/vnd.api+json",
                "Accept": "application/vnd.api+json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls) -> "VaultApiConnector":
        if not config.VAULT_API_KEY:
            raise UpstreamFailure("VAULT_API_KEY is not configured")
        return cls(config.VAULT_API_URL, config.VAULT_API_KEY, timeout=config.VAULT_REQUEST_TIMEOUT)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamFailure(
                f"GET {path} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamFailure(f"GET {path} failed: {e}") from e

    async def request_list_raw(
        self,
        path: str,
        *,
        page: int = 1,
        page_size: int = 50,
        filters: Optional[Dict[str, str]] = None,
        sort: Optional[str] = None,
    ) -> ListResponse:
        params: Dict[str, Any] = {
            "page[number]": page,
            "page[size]": min(page_size, MAX_PAGE_SIZE),
        }
        if sort:
            params["sort"] = sort
        for key, value in (filters or {}).items():
            params[f"filter[{key}]"] = value

        body = await self._get(path, params)
        try:
            meta = body.get("meta") or {}
            return ListResponse(
                records=[_record(item) for item in body.get("data") or []],
                current_page=meta.get("current-page") or page,
                total_pages=meta.get("total-pages") or 1,
                total_count=meta.get("total-count"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamFailure(f"GET {path} returned a malformed page: {e!r}") from e

    async def request_single_raw(self, path: str) -> VaultRecord:
        body = await self._get(path)
        try:
            return _record(body["data"])
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamFailure(f"GET {path} returned a malformed record: {e!r}") from e

    async def health_check(self) -> bool:
        try:
            await self.request_list_raw("/organizations", page_size=1)
            return True
        except UpstreamFailure as e:
            log.warning("Vault health check failed: %s", e)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
