"""Shared types for queue processors."""

from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel

from listrelay.queue.client import QueueClient, SubmissionResult
from listrelay.routing.client_state import ClientStateTokens
from listrelay.routing.environment import QueueSettings
from listrelay.source.documents import DocumentResolver
from listrelay.source.models import SourceItem, as_record
from listrelay.webhook.models import Notification


class ProcessingContext(BaseModel):
    """Everything a processor factory may need for one notification."""

    notification: Notification
    tokens: ClientStateTokens
    settings: QueueSettings
    queue_client: QueueClient
    queue_name: str | None = None
    documents: DocumentResolver | None = None
    site_id: str | None = None

    model_config = {"arbitrary_types_allowed": True}


class ProcessResult(BaseModel):
    processed: bool
    processor: str
    item_id: str | None = None
    reason: str | None = None
    reference: str | None = None
    submission: SubmissionResult | None = None


class Processor(Protocol):
    name: str

    async def process(
        self,
        item: SourceItem,
        previous_fields: Mapping[str, Any] | None = None,
    ) -> ProcessResult:
        """Validate, transform and submit one item. Raises RelayError on failure."""
        ...


def item_values(item: SourceItem | Mapping[str, Any]) -> dict[str, Any]:
    """Field view of an item: top-level record with ``fields`` laid over it."""
    record = as_record(item)
    fields = record.get("fields")
    if isinstance(fields, Mapping):
        return {**record, **fields}
    return record


def first_value(values: Mapping[str, Any], *names: str) -> Any:
    """First non-empty value among names."""
    for name in names:
        value = values.get(name)
        if value not in (None, ""):
            return value
    return None


def item_identifier(values: Mapping[str, Any], default: str = "NOID") -> str:
    return str(first_value(values, "id", "ID") or default)
