"""Forward notifications to a third-party URL named in the subscription's clientState.

Three modes: ``simple`` posts the notification in an envelope, ``withData`` adds the current
item's (filtered) fields, ``withChanges`` also diffs against the stored snapshot and stores the
new one. Forwarding never raises: failures come back as ``ForwardResult(success=False)`` so the
webhook acknowledgement does not depend on the downstream endpoint.
"""

import json
import time
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from listrelay.changes.state_store import StateStore
from listrelay.config import FORWARD_TIMEOUT_SECONDS
from listrelay.routing.client_state import ForwardConfig, ForwardMode
from listrelay.source.graph_client import SharePointClient
from listrelay.utils.logger import get_logger
from listrelay.webhook.models import Notification

logger = get_logger("listrelay.forwarder")

FORWARD_SOURCE = "SharePoint-Webhook-Proxy-Enhanced"


class ForwardResult(BaseModel):
    success: bool
    mode: ForwardMode
    status: int | None = None
    duration_ms: int | None = None
    payload_size: int | None = None
    error: str | None = None


def filter_fields(
    fields: Mapping[str, Any] | None,
    include_fields: Iterable[str] | None = None,
    exclude_fields: Iterable[str] | None = None,
) -> dict[str, Any]:
    if not fields:
        return {}
    include = list(include_fields or ())
    filtered = {name: fields[name] for name in include if name in fields} if include else dict(fields)
    for name in exclude_fields or ():
        filtered.pop(name, None)
    return filtered


def compare_versions(
    current: Mapping[str, Any] | None,
    previous: Mapping[str, Any] | None,
) -> dict[str, dict[str, Any]]:
    """Added, modified (old/new) and removed fields between two field maps."""
    changes: dict[str, dict[str, Any]] = {"added": {}, "modified": {}, "removed": {}}
    if current is None or previous is None:
        return changes
    for name, value in current.items():
        if name not in previous:
            changes["added"][name] = value
        elif json.dumps(value, sort_keys=True, default=str) != json.dumps(
            previous[name], sort_keys=True, default=str
        ):
            changes["modified"][name] = {"old": previous[name], "new": value}
    for name, value in previous.items():
        if name not in current:
            changes["removed"][name] = value
    return changes


def snapshot_key(resource: str, item_id: str) -> tuple[str, str]:
    partition = resource
    for ch in "/:":
        partition = partition.replace(ch, "_")
    return partition, f"item_{item_id}"


class Forwarder:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        source: SharePointClient | None = None,
        store: StateStore | None = None,
        timeout: float = FORWARD_TIMEOUT_SECONDS,
        processed_by: str = "listrelay",
    ):
        self._http = http_client
        self._source = source
        self._store = store
        self._timeout = timeout
        self._processed_by = processed_by

    async def _previous_snapshot(self, resource: str, item_id: str) -> dict[str, Any] | None:
        if self._store is None:
            return None
        try:
            return await self._store.get(*snapshot_key(resource, item_id))
        except Exception as e:
            logger.warning("forwarder.snapshot.read_failed", resource=resource, item_id=item_id, error=str(e))
            return None

    async def _store_snapshot(self, resource: str, item_id: str, state: Mapping[str, Any]) -> None:
        if self._store is None:
            return
        try:
            await self._store.upsert(*snapshot_key(resource, item_id), dict(state))
        except Exception as e:
            logger.warning("forwarder.snapshot.write_failed", resource=resource, item_id=item_id, error=str(e))

    async def build_payload(self, notification: Notification, config: ForwardConfig) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": FORWARD_SOURCE,
            "notification": notification.to_wire(),
            "metadata": {"processedBy": self._processed_by, "forwardingMode": config.mode},
        }
        if config.mode == "simple":
            return payload
        if self._source is None:
            logger.warning("forwarder.no_source", mode=config.mode)
            return payload

        resource_data = notification.resource_data.model_dump(by_alias=True) if notification.resource_data else None
        item = await self._source.fetch_item(notification.resource, resource_data)
        if item is None:
            logger.warning("forwarder.current_unavailable", resource=notification.resource, mode=config.mode)
            return payload

        current_state = {
            "id": item.id,
            "lastModified": item.lastModifiedDateTime,
            "webUrl": item.webUrl,
            "fields": filter_fields(item.fields, config.include_fields, config.exclude_fields),
        }
        payload["currentState"] = current_state
        if config.mode == "withData":
            return payload

        previous = await self._previous_snapshot(notification.resource, item.id)
        previous_fields = (previous or {}).get("fields")
        changes = compare_versions(item.fields, previous_fields if previous else None)
        await self._store_snapshot(
            notification.resource,
            item.id,
            {"fields": dict(item.fields), "lastModifiedDateTime": item.lastModifiedDateTime},
        )
        payload["changes"] = {
            "summary": {
                "addedFields": len(changes["added"]),
                "modifiedFields": len(changes["modified"]),
                "removedFields": len(changes["removed"]),
            },
            "details": changes,
        }
        payload["previousState"] = (
            {
                "lastModified": previous.get("lastModifiedDateTime"),
                "fields": filter_fields(previous_fields, config.include_fields, config.exclude_fields),
            }
            if previous
            else None
        )
        return payload

    async def forward(
        self,
        notification: Notification,
        target_url: str,
        mode: ForwardMode = "simple",
        include_fields: list[str] | None = None,
        exclude_fields: list[str] | None = None,
    ) -> ForwardResult:
        config = ForwardConfig(
            url=target_url,
            mode=mode,
            include_fields=include_fields,
            exclude_fields=exclude_fields,
        )
        return await self.forward_with_config(notification, config)

    async def forward_with_config(self, notification: Notification, config: ForwardConfig) -> ForwardResult:
        started = time.monotonic()
        try:
            payload = await self.build_payload(notification, config)
            body = json.dumps(payload, default=str)
            response = await self._http.post(
                config.url,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-SharePoint-Webhook": "true",
                    "X-Forwarding-Mode": config.mode,
                },
                timeout=self._timeout,
            )
        except Exception as e:
            logger.error(
                "forwarder.failed",
                url=config.url,
                mode=config.mode,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ForwardResult(success=False, mode=config.mode, error=str(e))

        duration_ms = int((time.monotonic() - started) * 1000)
        success = 200 <= response.status_code < 300
        log = logger.info if success else logger.warning
        log(
            "forwarder.forwarded",
            url=config.url,
            mode=config.mode,
            status=response.status_code,
            duration_ms=duration_ms,
            payload_size=len(body),
        )
        return ForwardResult(
            success=success,
            mode=config.mode,
            status=response.status_code,
            duration_ms=duration_ms,
            payload_size=len(body),
        )
