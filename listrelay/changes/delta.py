"""Delta-token bookkeeping for list change queries."""

from typing import Any

from pydantic import BaseModel, Field

from listrelay.changes.state_store import StateStore
from listrelay.source.graph_client import SharePointClient, parse_item_resource
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.changes.delta")

DELTA_PARTITION = "delta"


class DeltaResult(BaseModel):
    changed_items: list[dict[str, Any]] = Field(default_factory=list)
    delta_link: str | None = None
    initial_sync: bool = False


def delta_row_key(site_id: str, list_id: str) -> str:
    row = f"{site_id}_{list_id}"
    for ch in "/:":
        row = row.replace(ch, "_")
    return row


class DeltaTracker:
    """Holds one continuation link per (site, list) and asks Graph for changes since it."""

    def __init__(self, store: StateStore, source: SharePointClient):
        self._store = store
        self._source = source

    async def get_recent_changes(self, resource: str) -> DeltaResult:
        """Changed items since the stored link; no stored link means a first full sync."""
        location = parse_item_resource(resource)
        if location is None:
            raise ValueError(f"Cannot derive site and list from resource: {resource!r}")
        row_key = delta_row_key(location.site_id, location.list_id)

        stored = await self._store.get(DELTA_PARTITION, row_key)
        delta_link = (stored or {}).get("delta_link")
        if delta_link:
            logger.debug("delta.query.continuation", row_key=row_key)
        else:
            logger.info("delta.query.initial_sync", row_key=row_key)

        page = await self._source.delta(location.site_id, location.list_id, delta_link=delta_link)
        if page.delta_link:
            await self._store.upsert(DELTA_PARTITION, row_key, {"delta_link": page.delta_link})

        logger.info("delta.query.done", row_key=row_key, changed=len(page.items))
        return DeltaResult(
            changed_items=page.items,
            delta_link=page.delta_link,
            initial_sync=not delta_link,
        )
