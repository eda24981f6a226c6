"""Field-level change detection for list items.

List webhooks say only that *something* in a resource changed. ``ChangeDetector`` fetches the
current item, compares it with the snapshot stored on the previous notification and stores
the current item as the new snapshot. A missing snapshot is reported as a new item.
"""

from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from listrelay.changes.state_store import StateStore
from listrelay.source.models import ListItem, SourceItem, as_record
from listrelay.utils.logger import get_logger
from listrelay.webhook.models import Notification

logger = get_logger("listrelay.changes.detector")

VERSION_FIELD = "_UIVersionString"
NEW_ITEM_FIELD = "_new_item"

CurrentItemFetcher = Callable[[], Awaitable[SourceItem | Mapping[str, Any] | None]]


class FieldChange(BaseModel):
    field: str
    old: Any
    new: Any
    type: str


class ChangeReport(BaseModel):
    has_changes: bool
    changes: list[FieldChange] = Field(default_factory=list)
    is_new_item: bool = False
    previous_version: str | None = None
    current_version: str | None = None
    previous_fields: dict[str, Any] | None = None
    error: str | None = None

    def changed_fields(self) -> list[str]:
        return [c.field for c in self.changes]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


def storage_key(resource: str, tenant_id: str | None, row_key: str) -> tuple[str, str]:
    """(partition, row) for a resource/item pair; ``/`` and ``:`` are not valid in keys."""
    partition = f"{tenant_id or 'unknown'}_{resource}"
    for ch in "/:":
        partition = partition.replace(ch, "_")
    return partition, row_key


def infer_field_type(name: str) -> str:
    lowered = name.lower()
    if name == VERSION_FIELD:
        return "version"
    if "date" in lowered:
        return "date"
    if "lookupid" in lowered:
        return "lookup"
    return "text"


def _is_comparable(name: str) -> bool:
    if "@odata" in name:
        return False
    if name.startswith("_") and name != VERSION_FIELD:
        return False
    return True


def item_fields(item: SourceItem | Mapping[str, Any] | None) -> dict[str, Any]:
    """The comparable field map of an item: ``fields`` for list items, the record otherwise."""
    if item is None:
        return {}
    if isinstance(item, ListItem):
        return dict(item.fields)
    record = as_record(item)
    if isinstance(record.get("fields"), dict):
        return dict(record["fields"])
    return record


def compare_fields(previous: Mapping[str, Any], current: Mapping[str, Any]) -> list[FieldChange]:
    changes = []
    for name, new_value in current.items():
        if not _is_comparable(name):
            continue
        old_value = previous.get(name)
        if old_value != new_value:
            changes.append(
                FieldChange(field=name, old=old_value, new=new_value, type=infer_field_type(name))
            )
    return changes


class ChangeDetector:
    """Diffs the current item against the last stored snapshot."""

    def __init__(self, store: StateStore):
        self._store = store

    async def detect_changes(
        self,
        notification: Notification,
        fetch_current: CurrentItemFetcher,
        save: bool = True,
    ) -> ChangeReport:
        """Diff the fetched item against its snapshot. With save=False the caller commits the
        snapshot later through ``save_snapshot``."""
        try:
            current = await fetch_current()
        except Exception as e:
            logger.error(
                "change_detector.fetch_failed",
                subscription_id=notification.subscription_id,
                resource=notification.resource,
                error=str(e),
            )
            return ChangeReport(has_changes=False, error=str(e))
        if current is None:
            return ChangeReport(has_changes=False, error="Current item could not be fetched")

        record = as_record(current)
        current_fields = item_fields(current)
        partition, row = self._key(notification, record)

        try:
            previous = await self._store.get(partition, row)
        except Exception as e:
            logger.warning(
                "change_detector.store_unavailable",
                partition_key=partition,
                row_key=row,
                error=str(e),
            )
            return ChangeReport(has_changes=False, error=f"State store unavailable: {e}")

        if previous is None:
            report = ChangeReport(
                has_changes=True,
                is_new_item=True,
                changes=[
                    FieldChange(
                        field=NEW_ITEM_FIELD,
                        old=None,
                        new=current_fields.get("Title") or "New Item",
                        type="created",
                    )
                ],
                current_version=current_fields.get(VERSION_FIELD),
            )
        else:
            previous_fields = previous.get("fields") or {}
            changes = compare_fields(previous_fields, current_fields)
            report = ChangeReport(
                has_changes=bool(changes),
                changes=changes,
                previous_version=previous_fields.get(VERSION_FIELD),
                current_version=current_fields.get(VERSION_FIELD),
                previous_fields=previous_fields,
            )

        if save:
            await self._save_snapshot(partition, row, record, current_fields)
        logger.info(
            "change_detector.detected",
            row_key=row,
            has_changes=report.has_changes,
            is_new_item=report.is_new_item,
            changed_fields=report.changed_fields(),
        )
        return report

    @staticmethod
    def _key(notification: Notification, record: Mapping[str, Any]) -> tuple[str, str]:
        row_key = notification.item_id or str(record.get("id") or "") or notification.subscription_id
        return storage_key(notification.resource, notification.tenant_id, row_key)

    async def save_snapshot(self, notification: Notification, current: SourceItem | Mapping[str, Any]) -> None:
        """Store current as the snapshot the next notification for this item is diffed against."""
        record = as_record(current)
        partition, row = self._key(notification, record)
        await self._save_snapshot(partition, row, record, item_fields(current))

    async def _save_snapshot(
        self,
        partition: str,
        row: str,
        record: Mapping[str, Any],
        current_fields: Mapping[str, Any],
    ) -> None:
        entity = {
            "fields": dict(current_fields),
            "last_modified": record.get("lastModifiedDateTime")
            or datetime.now(timezone.utc).isoformat(),
            "version": current_fields.get(VERSION_FIELD) or "1.0",
        }
        try:
            await self._store.upsert(partition, row, entity)
        except Exception as e:
            logger.warning(
                "change_detector.save_failed",
                partition_key=partition,
                row_key=row,
                error=str(e),
            )

    async def cleanup(self, days: int) -> int:
        return await self._store.purge_older_than(days)
