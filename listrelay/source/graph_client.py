"""Microsoft Graph client for SharePoint lists, drive items and delta queries (async)."""

import asyncio
import re
from typing import Any

import httpx
from pydantic import BaseModel, Field

from listrelay.auth.token_cache import CredentialCache
from listrelay.config import GRAPH_BASE_URL, SOURCE_TIMEOUT_SECONDS
from listrelay.errors import RelayError, ValidationError, error_from_status
from listrelay.source.models import DriveItem, ListItem
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.source.graph_client")

GRAPH_PROVIDER_KEY = "graph"
MAX_DELTA_PAGES = 20
RECENT_ITEMS_TOP = 5

_ITEM_RESOURCE = re.compile(r"sites/([^/]+)/lists/([^/]+)/items/([^/?]+)", re.IGNORECASE)
_LIST_RESOURCE = re.compile(r"^sites/(.+)/lists/([^/?]+)", re.IGNORECASE)


class ItemLocation(BaseModel):
    site_id: str
    list_id: str
    item_id: str | None = None

    model_config = {"frozen": True}


class DeltaPage(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    delta_link: str | None = None


def parse_item_resource(resource: str, item_id: str | None = None) -> ItemLocation | None:
    """Site, list and (when present) item id from either resource shape.

    Accepts ``sites/{site}/lists/{list}/items/{id}`` and the webhook form
    ``sites/{domain}:/sites/{site}:/lists/{list}``; item_id fills in for the latter.
    """
    resource = (resource or "").strip().strip("/")
    m = _ITEM_RESOURCE.search(resource)
    if m:
        return ItemLocation(site_id=m.group(1), list_id=m.group(2), item_id=m.group(3))
    m = _LIST_RESOURCE.match(resource)
    if m:
        site_id = m.group(1).rstrip("/")
        return ItemLocation(site_id=site_id, list_id=m.group(2), item_id=item_id or None)
    return None


def _is_transient_network_error(e: Exception) -> bool:
    """True for connection resets, protocol hiccups and timeouts worth one more attempt."""
    return isinstance(
        e,
        (
            httpx.ConnectError,
            httpx.ReadError,
            httpx.WriteError,
            httpx.RemoteProtocolError,
            httpx.LocalProtocolError,
            httpx.TimeoutException,
            ConnectionResetError,
        ),
    )


class SharePointClient:
    """Reads SharePoint data through Graph with a client-credential token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialCache,
        provider_key: str = GRAPH_PROVIDER_KEY,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = SOURCE_TIMEOUT_SECONDS,
        max_attempts: int = 3,
    ):
        self._http = http_client
        self._credentials = credentials
        self._provider_key = provider_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Authorized request. Retries transient network errors, maps HTTP errors onto RelayError."""
        if not url.startswith("http"):
            url = f"{self._base_url}/{url.lstrip('/')}"
        token = await self._credentials.get_token(self._provider_key)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        for attempt in range(self._max_attempts):
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=timeout or self._timeout,
                )
                break
            except Exception as e:
                if attempt < self._max_attempts - 1 and _is_transient_network_error(e):
                    delay = 0.5 * (attempt + 1)
                    logger.debug(
                        "graph_client.request.retry",
                        method=method,
                        url=url,
                        attempt=attempt + 1,
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise
        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text[:500]
            if response.status_code == 401:
                self._credentials.clear(self._provider_key)
            raise error_from_status(
                response.status_code,
                f"Graph {method} {url} failed with status {response.status_code}",
                {"response": body},
            )
        return response

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._request("GET", url, params=params)
        return response.json()

    async def get_list_item(self, site_id: str, list_id: str, item_id: str) -> ListItem:
        data = await self.get_json(
            f"sites/{site_id}/lists/{list_id}/items/{item_id}",
            params={"$expand": "fields"},
        )
        return ListItem.model_validate({**data, "id": str(data.get("id") or item_id)})

    async def get_recent_item(self, site_id: str, list_id: str) -> ListItem | None:
        """Most recently modified item in the list (list webhooks carry no item id)."""
        data = await self.get_json(
            f"sites/{site_id}/lists/{list_id}/items",
            params={
                "$expand": "fields",
                "$orderby": "lastModifiedDateTime desc",
                "$top": str(RECENT_ITEMS_TOP),
            },
        )
        items = data.get("value") or []
        if not items:
            return None
        recent = max(items, key=lambda i: i.get("lastModifiedDateTime") or "")
        return ListItem.model_validate({**recent, "id": str(recent.get("id", ""))})

    async def fetch_item(
        self,
        resource: str,
        resource_data: dict[str, Any] | None = None,
    ) -> ListItem | None:
        """Current state of the item a notification refers to, or None (logged) when unavailable."""
        item_id = (resource_data or {}).get("id")
        location = parse_item_resource(resource, item_id=item_id)
        if location is None:
            logger.warning("graph_client.fetch_item.unparsable_resource", resource=resource)
            return None
        try:
            if location.item_id:
                item = await self.get_list_item(location.site_id, location.list_id, location.item_id)
            else:
                logger.info("graph_client.fetch_item.no_item_id", resource=resource)
                item = await self.get_recent_item(location.site_id, location.list_id)
        except RelayError as e:
            if e.status_code in (401, 403):
                raise
            logger.error(
                "graph_client.fetch_item.error",
                resource=resource,
                item_id=location.item_id,
                error=str(e),
                status=e.status_code,
            )
            return None
        except httpx.HTTPError as e:
            logger.error(
                "graph_client.fetch_item.error",
                resource=resource,
                item_id=location.item_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        if item is None:
            logger.warning("graph_client.fetch_item.not_found", resource=resource)
            return None
        logger.info(
            "graph_client.fetch_item.ok",
            item_id=item.id,
            title=item.fields.get("Title"),
            list_id=location.list_id,
        )
        return item

    async def delta(self, site_id: str, list_id: str, delta_link: str | None = None) -> DeltaPage:
        """Changed items since delta_link (or a full initial sync), following nextLink pages."""
        url = delta_link or f"{self._base_url}/sites/{site_id}/lists/{list_id}/items/delta"
        page = DeltaPage()
        for _ in range(MAX_DELTA_PAGES):
            data = await self.get_json(url)
            page.items.extend(data.get("value") or [])
            if data.get("@odata.deltaLink"):
                page.delta_link = data["@odata.deltaLink"]
                break
            next_link = data.get("@odata.nextLink")
            if not next_link:
                break
            url = next_link
        else:
            logger.warning("graph_client.delta.page_limit", site_id=site_id, list_id=list_id)
        return page

    async def get_drive_item(self, site_id: str, item_id: str) -> DriveItem:
        data = await self.get_json(f"sites/{site_id}/drive/items/{item_id}")
        return DriveItem.model_validate({**data, "id": str(data.get("id") or item_id)})

    async def download(self, url: str, max_bytes: int) -> tuple[bytes, str | None]:
        """Download url into memory, refusing bodies larger than max_bytes."""
        async with self._http.stream("GET", url, timeout=self._timeout) as response:
            if response.status_code >= 400:
                raise error_from_status(
                    response.status_code,
                    f"Download failed with status {response.status_code}",
                    {"url": url},
                )
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise ValidationError(
                    f"File too large: {declared} bytes exceeds {max_bytes}",
                    {"size": int(declared), "limit": max_bytes},
                    status_code=413,
                )
            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    raise ValidationError(
                        f"File too large: more than {max_bytes} bytes",
                        {"limit": max_bytes},
                        status_code=413,
                    )
                chunks.append(chunk)
            return b"".join(chunks), response.headers.get("content-type")

    async def list_items(
        self,
        site_id: str,
        list_id: str,
        filter_expr: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"$expand": "fields"}
        if filter_expr:
            params["$filter"] = filter_expr
        data = await self._request(
            "GET",
            f"sites/{site_id}/lists/{list_id}/items",
            params=params,
        )
        return data.json().get("value") or []

    async def update_item_fields(
        self,
        site_id: str,
        list_id: str,
        item_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"sites/{site_id}/lists/{list_id}/items/{item_id}/fields",
            json=fields,
        )
        return response.json() if response.content else {}
