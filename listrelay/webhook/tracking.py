"""Subscription tracking list: the last-known clientState per subscription plus counters.

Graph never returns a subscription's clientState on read, so the value written at creation is
kept in a SharePoint tracking list (one row per subscription, keyed by ``SubscriptionId``).
Rows with ``Status == "Deleted"`` are ignored.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Protocol

from listrelay.source.graph_client import SharePointClient
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.webhook.tracking")

DELETED_STATUS = "Deleted"


class TrackingStore(Protocol):
    async def get_client_state(self, subscription_id: str) -> str | None:
        """Last-known clientState for the subscription, or None."""
        ...

    async def record_notification(self, subscription_id: str) -> None:
        ...

    async def record_failure(self, subscription_id: str, error: str) -> None:
        ...


class InMemoryTrackingStore:
    def __init__(self, client_states: dict[str, str] | None = None):
        self._lock = asyncio.Lock()
        self._client_states = dict(client_states or {})
        self.notification_counts: dict[str, int] = {}
        self.failures: dict[str, list[str]] = {}

    async def get_client_state(self, subscription_id: str) -> str | None:
        return self._client_states.get(subscription_id)

    async def record_notification(self, subscription_id: str) -> None:
        async with self._lock:
            self.notification_counts[subscription_id] = self.notification_counts.get(subscription_id, 0) + 1

    async def record_failure(self, subscription_id: str, error: str) -> None:
        async with self._lock:
            self.failures.setdefault(subscription_id, []).append(error)


class GraphTrackingStore:
    """Tracking rows in a SharePoint list, read and updated through Graph."""

    def __init__(self, source: SharePointClient, site_path: str, list_id: str):
        self._source = source
        self._site_path = site_path
        self._list_id = list_id
        self._client_states: dict[str, str] = {}

    async def _find_row(self, subscription_id: str) -> dict[str, Any] | None:
        rows = await self._source.list_items(
            self._site_path,
            self._list_id,
            filter_expr=f"fields/SubscriptionId eq '{subscription_id}'",
        )
        if not rows:
            logger.warning("tracking.row_not_found", subscription_id=subscription_id)
            return None
        row = rows[0]
        if (row.get("fields") or {}).get("Status") == DELETED_STATUS:
            logger.warning("tracking.row_deleted", subscription_id=subscription_id)
            return None
        return row

    async def get_client_state(self, subscription_id: str) -> str | None:
        if subscription_id in self._client_states:
            return self._client_states[subscription_id]
        try:
            row = await self._find_row(subscription_id)
        except Exception as e:
            logger.error("tracking.lookup_failed", subscription_id=subscription_id, error=str(e))
            return None
        client_state = ((row or {}).get("fields") or {}).get("ClientState")
        if client_state:
            self._client_states[subscription_id] = client_state
        return client_state or None

    async def record_notification(self, subscription_id: str) -> None:
        try:
            row = await self._find_row(subscription_id)
            if row is None:
                return
            count = int((row.get("fields") or {}).get("NotificationCount") or 0) + 1
            await self._source.update_item_fields(
                self._site_path,
                self._list_id,
                str(row["id"]),
                {"NotificationCount": count},
            )
            logger.debug("tracking.notification_recorded", subscription_id=subscription_id, count=count)
        except Exception as e:
            logger.error("tracking.record_failed", subscription_id=subscription_id, error=str(e))

    async def record_failure(self, subscription_id: str, error: str) -> None:
        try:
            row = await self._find_row(subscription_id)
            if row is None:
                return
            await self._source.update_item_fields(
                self._site_path,
                self._list_id,
                str(row["id"]),
                {
                    "LastError": error[:255],
                    "LastErrorTime": datetime.now(timezone.utc).isoformat(),
                },
            )
        except Exception as e:
            logger.error("tracking.record_failed", subscription_id=subscription_id, error=str(e))
