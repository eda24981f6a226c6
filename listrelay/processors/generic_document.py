"""Generic processor for document libraries and lists without bespoke business rules."""

import re
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from listrelay.errors import ValidationError
from listrelay.processors.base import (
    ProcessingContext,
    ProcessResult,
    first_value,
    item_identifier,
    item_values,
)
from listrelay.queue.client import QueueClient
from listrelay.queue.payload import DEFAULT_PRIORITY, Priority, build_item_content, build_payload
from listrelay.routing.client_state import KEY_EXCLUDE_FIELDS, KEY_INCLUDE_FIELDS, field_list
from listrelay.source.documents import file_extension
from listrelay.source.models import SourceItem
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.processors.generic_document")

GENERIC_DOCUMENT_PROCESSOR = "generic-document"
REFERENCE_PREFIX = "SPDOC"

_SEPARATORS = re.compile(r"[\s,]+")


def _person(value: Any) -> str | None:
    if isinstance(value, Mapping):
        user = value.get("user") if isinstance(value.get("user"), Mapping) else value
        return user.get("Email") or user.get("email") or user.get("Title") or user.get("displayName")
    return str(value) if value else None


class GenericDocumentProcessor:
    name = GENERIC_DOCUMENT_PROCESSOR

    def __init__(
        self,
        queue_client: QueueClient,
        queue_name: str | None = None,
        include_fields: Iterable[str] | None = None,
        exclude_fields: Iterable[str] | None = None,
        allowed_extensions: Iterable[str] | None = None,
        priority: Priority = DEFAULT_PRIORITY,
        reference_prefix: str = REFERENCE_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self._queue = queue_client
        self._queue_name = queue_name or queue_client.settings.default_queue
        self._include = list(include_fields) if include_fields is not None else None
        self._exclude = list(exclude_fields or ())
        self._allowed = (
            {ext.lower().lstrip(".") for ext in allowed_extensions} if allowed_extensions else None
        )
        self._priority = priority
        self._prefix = reference_prefix
        self._clock = clock

    def should_process(self, values: Mapping[str, Any]) -> bool:
        if not values:
            return False
        file_name = first_value(values, "FileLeafRef", "name")
        if self._allowed is not None and file_name:
            return file_extension(str(file_name)) in self._allowed
        return True

    def reference(self, values: Mapping[str, Any]) -> str:
        name = str(first_value(values, "FileLeafRef", "name", "Title") or "ITEM")
        name = _SEPARATORS.sub("_", name)
        return f"{self._prefix}_{name}_{item_identifier(values)}_{int(self._clock() * 1000)}"

    def additional_content(self, values: Mapping[str, Any]) -> dict[str, Any]:
        extra = {
            "FilePath": values.get("FileRef"),
            "FileDirectory": values.get("FileDirRef"),
            "FileName": first_value(values, "FileLeafRef"),
            "UniqueId": values.get("UniqueId"),
            "ContentType": values.get("ContentType") if isinstance(values.get("ContentType"), str) else None,
            "CreatedBy": _person(values.get("Author") or values.get("createdBy")),
            "ModifiedBy": _person(values.get("Editor") or values.get("lastModifiedBy")),
            "LastModified": first_value(values, "LastModifiedDateTime", "Modified", "lastModifiedDateTime"),
            "WebUrl": first_value(values, "WebUrl", "webUrl"),
        }
        return {key: value for key, value in extra.items() if value is not None}

    async def process(
        self,
        item: SourceItem,
        previous_fields: Mapping[str, Any] | None = None,
    ) -> ProcessResult:
        values = item_values(item)
        item_id = item_identifier(values)
        if not self.should_process(values):
            logger.debug("generic_document.skip", item_id=item_id)
            return ProcessResult(
                processed=False,
                processor=self.name,
                item_id=item_id,
                reason="Item did not meet processing criteria",
            )
        if not self._queue_name:
            raise ValidationError("Queue name not configured for generic document processor")

        content = build_item_content(item, self._include, self._exclude)
        content.update(build_payload(self.additional_content(values), self._include, self._exclude))
        reference = self.reference(values)

        submission = await self._queue.enqueue(
            self._queue_name,
            content,
            reference=reference,
            priority=self._priority,
        )
        return ProcessResult(
            processed=submission.success,
            processor=self.name,
            item_id=item_id,
            reference=reference,
            submission=submission,
            reason=submission.reason,
        )


def create_generic_document_processor(context: ProcessingContext) -> GenericDocumentProcessor:
    return GenericDocumentProcessor(
        context.queue_client,
        queue_name=context.queue_name or context.settings.default_queue,
        include_fields=field_list(context.tokens.get_raw(KEY_INCLUDE_FIELDS)),
        exclude_fields=field_list(context.tokens.get_raw(KEY_EXCLUDE_FIELDS)),
    )
