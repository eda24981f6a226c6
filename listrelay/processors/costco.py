"""COSTCO inline routing: submit routing-form items to Orchestrator once they reach "Send Generated Form".

The list item must carry a ship-to email, ship date, style and PO number. The generated routing
form hyperlink is resolved into a document reference so the robot can open the file. The queue
payload is deliberately minimal: rich text and email columns are left out.
"""

import re
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from listrelay.config import COSTCO_QUEUE_NAME
from listrelay.errors import ValidationError
from listrelay.processors.base import (
    ProcessingContext,
    ProcessResult,
    first_value,
    item_identifier,
    item_values,
)
from listrelay.queue.client import QueueClient
from listrelay.queue.payload import Priority, build_payload
from listrelay.source.documents import DocumentResolver
from listrelay.source.models import SourceItem
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.processors.costco")

COSTCO_PROCESSOR = "costco-inline-routing"
PROCESS_TYPE = "COSTCO_INLINE_ROUTING"
COSTCO_PRIORITY: Priority = "High"
TRIGGER_SOURCE = "SharePoint_Webhook"

STATUS_FIELD = "Status"
TRIGGER_STATUS = "Send Generated Form"
EXPECTED_PREVIOUS_STATUSES = ("Draft", "In Progress", "Ready for Review")

# Required field -> internal names it appears under
FIELD_NAMES: dict[str, tuple[str, ...]] = {
    "ShiptoEmail": ("Ship_x002d_toEmail", "ShiptoEmail", "Ship_x0020_To_x0020_Email"),
    "ShipDate": ("ShipDate", "Ship_x0020_Date"),
    "Style": ("Style",),
    "PO_No": ("PO_x005f_No", "PO_No", "PO_x005f_no"),
}
ROUTING_FORM_FIELDS = ("GeneratedRoutingFormURL", "Generated_x0020_Routing_x0020_Form_x0020_URL")
DEFAULT_FORM_NAME = "RoutingForm.xlsx"

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SHIP_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")
_PO_NUMBER = re.compile(r"^[A-Z0-9\-_,\s]+$", re.IGNORECASE)

_URL_ENTITIES = (
    ("&#58;", ":"),
    ("&#x3A;", ":"),
    ("&#x3a;", ":"),
    ("%3A", ":"),
    ("%3a", ":"),
    ("&amp;", "&"),
    ("&#38;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


def decode_url(url: str | None) -> str | None:
    """Undo the HTML entities SharePoint leaves in hyperlink values."""
    if not url:
        return url
    for entity, char in _URL_ENTITIES:
        url = url.replace(entity, char)
    return url


def required_value(values: Mapping[str, Any], field: str) -> Any:
    return first_value(values, *FIELD_NAMES[field])


def parse_ship_date(value: Any) -> datetime | None:
    """M/D/YYYY (as typed in the list) or ISO-8601 (as Graph returns dateTime columns)."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    m = _SHIP_DATE.match(value.strip())
    if m:
        month, day, year = (int(g) for g in m.groups())
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def should_process(values: Mapping[str, Any], previous_fields: Mapping[str, Any] | None = None) -> bool:
    """True when Status is the trigger value and, with a snapshot, actually changed to it."""
    item_id = item_identifier(values)
    status = values.get(STATUS_FIELD)
    if status != TRIGGER_STATUS:
        logger.debug("costco.skip.status", item_id=item_id, status=status)
        return False
    if previous_fields:
        previous_status = previous_fields.get(STATUS_FIELD)
        if previous_status == status:
            logger.debug("costco.skip.status_unchanged", item_id=item_id, status=status)
            return False
        if previous_status not in EXPECTED_PREVIOUS_STATUSES:
            logger.warning(
                "costco.unexpected_previous_status",
                item_id=item_id,
                previous_status=previous_status,
                expected=list(EXPECTED_PREVIOUS_STATUSES),
            )
    return True


def validate_required_fields(values: Mapping[str, Any]) -> None:
    """Raise ValidationError listing missing or malformed required fields."""
    item_id = item_identifier(values)
    missing = [field for field in FIELD_NAMES if not required_value(values, field)]
    if missing:
        raise ValidationError(
            f"Missing required COSTCO fields: {', '.join(missing)}",
            {"missing_fields": missing, "item_id": item_id},
        )

    invalid = []
    email = str(required_value(values, "ShiptoEmail"))
    if not _EMAIL.match(email):
        invalid.append({"field": "ShiptoEmail", "value": email, "reason": "Invalid email format"})
    ship_date = required_value(values, "ShipDate")
    if isinstance(ship_date, str) and parse_ship_date(ship_date) is None:
        invalid.append(
            {"field": "ShipDate", "value": ship_date, "reason": "Invalid date format (expected M/D/YYYY)"}
        )
    po_number = str(required_value(values, "PO_No"))
    if not _PO_NUMBER.match(po_number):
        invalid.append({"field": "PO_No", "value": po_number, "reason": "Invalid PO number format"})

    if invalid:
        raise ValidationError(
            "Invalid field values in COSTCO item",
            {"invalid_fields": invalid, "item_id": item_id},
        )


def document_section(document: Mapping[str, Any] | None) -> dict[str, Any]:
    """The ``Document`` block of the queue payload."""
    if not document or not document.get("hasDocument"):
        return {
            "HasDocument": False,
            "Reason": (document or {}).get("reason")
            or (document or {}).get("error")
            or "No document information provided",
        }
    section: dict[str, Any] = {
        "HasDocument": True,
        "Strategy": document.get("strategy") or "fallback",
        "FileName": document.get("fileName"),
        "FileExtension": document.get("fileExtension"),
        "RequiresDownload": document.get("requiresDownload") is not False,
        "ProcessedAt": document.get("processedAt") or datetime.now(timezone.utc).isoformat(),
    }
    urls = (
        ("DocumentUrl", "documentUrl"),
        ("CleanUrl", "cleanUrl"),
        ("OriginalUrl", "originalUrl"),
        ("DirectDownloadUrl", "directDownloadUrl"),
        ("DownloadUrl", "downloadUrl"),
    )
    for target, key in urls:
        if document.get(key):
            section[target] = decode_url(document[key])
    if document.get("documentId"):
        section["DocumentId"] = document["documentId"]
    if document.get("error"):
        section["ProcessingError"] = document["error"]
    if document.get("fallback"):
        section["FallbackProcessing"] = True
    return section


class CostcoProcessor:
    name = COSTCO_PROCESSOR

    def __init__(
        self,
        queue_client: QueueClient,
        documents: DocumentResolver | None = None,
        queue_name: str | None = None,
        site_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._queue = queue_client
        self._documents = documents or DocumentResolver()
        self._queue_name = queue_name or COSTCO_QUEUE_NAME
        self._site_id = site_id
        self._clock = clock

    async def document_info(self, values: Mapping[str, Any]) -> dict[str, Any]:
        routing_form = first_value(values, *ROUTING_FORM_FIELDS)
        if not routing_form:
            logger.info("costco.document.none", item_id=item_identifier(values))
            return {"hasDocument": False, "reason": "No GeneratedRoutingFormURL field found"}
        if isinstance(routing_form, Mapping):
            routing_form = routing_form.get("Url") or routing_form.get("url") or ""
        document = await self._documents.create_document_reference(str(routing_form), self._site_id)
        if not document.get("hasDocument"):
            return {
                "hasDocument": True,
                "strategy": "basic_cleanup",
                "fileName": DEFAULT_FORM_NAME,
                "originalUrl": str(routing_form),
                "documentUrl": decode_url(str(routing_form)),
                "requiresDownload": True,
                "error": document.get("error"),
            }
        return document

    def transform(self, values: Mapping[str, Any], document: Mapping[str, Any] | None) -> dict[str, Any]:
        """Minimal queue payload (nested; flattened by build_payload)."""
        payload: dict[str, Any] = {
            "ProcessType": PROCESS_TYPE,
            "QueueName": self._queue_name,
            "TriggerSource": TRIGGER_SOURCE,
            "ProcessedAt": datetime.now(timezone.utc).isoformat(),
            "SharePointItemId": item_identifier(values, default="UNKNOWN"),
            "ShipDate": required_value(values, "ShipDate") or "",
            "Style": values.get("Style") or "",
            "PONumber": str(required_value(values, "PO_No") or "NOPO"),
            "Status": values.get(STATUS_FIELD) or "",
            "Title": values.get("Title") or "",
            "ModifiedDate": first_value(values, "lastModifiedDateTime", "Modified")
            or datetime.now(timezone.utc).isoformat(),
            "Document": document_section(document),
        }
        ship_date = parse_ship_date(payload["ShipDate"])
        if ship_date is not None:
            payload["ShipDate"] = ship_date.isoformat()
            payload["ShipDateFormatted"] = f"{ship_date.month}/{ship_date.day}/{ship_date.year}"
        return payload

    def reference(self, po_number: str, item_id: str) -> str:
        clean_po = re.sub(r"[,\s]", "_", po_number) if po_number else "NOPO"
        return f"COSTCO_{clean_po}_{item_id}_{int(self._clock() * 1000)}"

    async def process(
        self,
        item: SourceItem,
        previous_fields: Mapping[str, Any] | None = None,
    ) -> ProcessResult:
        values = item_values(item)
        item_id = item_identifier(values)
        if not should_process(values, previous_fields):
            return ProcessResult(
                processed=False,
                processor=self.name,
                item_id=item_id,
                reason="Item does not meet processing criteria",
            )

        validate_required_fields(values)
        document = await self.document_info(values)
        payload = self.transform(values, document)
        reference = self.reference(payload["PONumber"], item_id)

        logger.info(
            "costco.submit",
            item_id=item_id,
            po_number=payload["PONumber"],
            queue=self._queue_name,
            reference=reference,
        )
        submission = await self._queue.enqueue(
            self._queue_name,
            build_payload(payload),
            reference=reference,
            priority=COSTCO_PRIORITY,
        )
        return ProcessResult(
            processed=submission.success,
            processor=self.name,
            item_id=item_id,
            reference=reference,
            submission=submission,
            reason=submission.reason,
        )


def create_costco_processor(context: ProcessingContext) -> CostcoProcessor:
    return CostcoProcessor(
        context.queue_client,
        documents=context.documents,
        queue_name=context.queue_name,
        site_id=context.site_id,
    )
