"""Key/value store for item snapshots and delta tokens.

Entries are upserted by (partition_key, row_key); concurrent writers to the same key race
and the last write wins. The store is a best-effort cache for diffing, not a source of
truth. ``JsonFileStateStore`` persists to a JSON file, ``InMemoryStateStore`` keeps
everything in process.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.changes.state_store")

UPDATED_AT = "updated_at"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StateStore(Protocol):
    """Upsert-by-key entity store."""

    async def get(self, partition_key: str, row_key: str) -> dict[str, Any] | None:
        """Stored entity or None."""
        ...

    async def upsert(self, partition_key: str, row_key: str, entity: dict[str, Any]) -> None:
        """Replace the entity stored under the key."""
        ...

    async def purge_older_than(self, days: int) -> int:
        """Delete entities last written more than days ago; returns the number removed."""
        ...


class InMemoryStateStore:
    """Process-local store (tests, single-run tools)."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}

    async def get(self, partition_key: str, row_key: str) -> dict[str, Any] | None:
        async with self._lock:
            entity = self._entities.get(partition_key, {}).get(row_key)
            return dict(entity) if entity is not None else None

    async def upsert(self, partition_key: str, row_key: str, entity: dict[str, Any]) -> None:
        async with self._lock:
            stored = dict(entity)
            stored.setdefault(UPDATED_AT, _now_iso())
            self._entities.setdefault(partition_key, {})[row_key] = stored

    async def purge_older_than(self, days: int) -> int:
        async with self._lock:
            return _purge(self._entities, days)


class JsonFileStateStore:
    """Store persisted to a JSON file, ``{partition: {row: entity}}``."""

    def __init__(self, store_path: str | Path):
        self._store_path = Path(store_path)
        self._lock = asyncio.Lock()
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}
        self._load()

    def _load(self) -> None:
        """Load state from disk. No-op if file missing or invalid."""
        if not self._store_path.exists():
            return
        try:
            data = json.loads(self._store_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                self._entities = {
                    str(pk): dict(rows) for pk, rows in data.items() if isinstance(rows, dict)
                }
        except Exception as e:
            logger.warning(
                "state_store.load_error",
                path=str(self._store_path),
                error=str(e),
            )

    def _save(self) -> None:
        """Write state to disk. Caller should hold _lock."""
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            self._store_path.write_text(
                json.dumps(self._entities, indent=2, default=str),
                encoding="utf-8",
            )
        except Exception as e:
            logger.error(
                "state_store.save_error",
                path=str(self._store_path),
                error=str(e),
            )

    async def get(self, partition_key: str, row_key: str) -> dict[str, Any] | None:
        async with self._lock:
            entity = self._entities.get(partition_key, {}).get(row_key)
            return dict(entity) if entity is not None else None

    async def upsert(self, partition_key: str, row_key: str, entity: dict[str, Any]) -> None:
        async with self._lock:
            stored = dict(entity)
            stored.setdefault(UPDATED_AT, _now_iso())
            self._entities.setdefault(partition_key, {})[row_key] = stored
            self._save()

    async def purge_older_than(self, days: int) -> int:
        async with self._lock:
            removed = _purge(self._entities, days)
            if removed:
                self._save()
            return removed


def _purge(entities: dict[str, dict[str, dict[str, Any]]], days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    removed = 0
    for partition_key in list(entities):
        rows = entities[partition_key]
        for row_key in list(rows):
            updated = _parse_iso(rows[row_key].get(UPDATED_AT))
            if updated is not None and updated < cutoff:
                del rows[row_key]
                removed += 1
        if not rows:
            del entities[partition_key]
    if removed:
        logger.info("state_store.purged", removed=removed, days=days)
    return removed
