"""Tests for the COSTCO routing processor and the generic document processor."""

import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from listrelay.errors import ValidationError
from listrelay.processors.costco import (
    CostcoProcessor,
    decode_url,
    document_section,
    parse_ship_date,
    should_process,
    validate_required_fields,
)
from listrelay.processors.generic_document import GenericDocumentProcessor
from listrelay.queue.client import SubmissionResult
from listrelay.routing.environment import QueueSettings
from listrelay.source.documents import DocumentResolver
from listrelay.source.models import DriveItem, ListItem


class FakeQueueClient:
    """Captures enqueue calls instead of talking to Orchestrator."""

    def __init__(self, default_queue: str = "DefaultQueue"):
        self.settings = QueueSettings(default_queue=default_queue)
        self.calls: list[dict] = []

    async def enqueue(self, queue_name, specific_content, *, reference=None, priority="Normal", **kwargs):
        self.calls.append(
            {"queue": queue_name, "content": dict(specific_content), "reference": reference, "priority": priority}
        )
        return SubmissionResult(success=True, queue_name=queue_name, queue_item_id=len(self.calls), reference=reference)


def _costco_item(**fields) -> ListItem:
    values = {
        "Title": "PO 4500",
        "Status": "Send Generated Form",
        "ShiptoEmail": "dock@example.com",
        "ShipDate": "5/7/2024",
        "Style": "ST-100",
        "PO_No": "4500, 4501",
        "GeneratedRoutingFormURL": "https://contoso.sharepoint.com/sites/costco/Forms/form.xlsx",
    }
    values.update(fields)
    return ListItem(id="17", lastModifiedDateTime="2024-05-01T10:00:00Z", fields=values)


class TestCostcoRules(unittest.TestCase):
    def test_should_process(self):
        self.assertTrue(should_process({"Status": "Send Generated Form"}))
        self.assertFalse(should_process({"Status": "Draft"}))
        self.assertTrue(should_process({"Status": "Send Generated Form"}, {"Status": "Draft"}))
        self.assertFalse(should_process({"Status": "Send Generated Form"}, {"Status": "Send Generated Form"}))

    def test_missing_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_required_fields({"ShiptoEmail": "a@b.co", "Style": "S"})
        self.assertEqual(ctx.exception.details["missing_fields"], ["ShipDate", "PO_No"])

    def test_invalid_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_required_fields(
                {"ShiptoEmail": "not-an-email", "ShipDate": "someday", "Style": "S", "PO_No": "PO#1"}
            )
        invalid = [entry["field"] for entry in ctx.exception.details["invalid_fields"]]
        self.assertEqual(invalid, ["ShiptoEmail", "ShipDate", "PO_No"])

    def test_encoded_field_names_accepted(self):
        validate_required_fields(
            {"Ship_x002d_toEmail": "a@b.co", "Ship_x0020_Date": "2024-05-07T00:00:00Z", "Style": "S", "PO_x005f_No": "1"}
        )

    def test_parse_ship_date(self):
        self.assertEqual(parse_ship_date("5/7/2024").isoformat(), "2024-05-07T00:00:00+00:00")
        self.assertEqual(parse_ship_date("2024-05-07T00:00:00Z").day, 7)
        self.assertIsNone(parse_ship_date("13/45/2024"))
        self.assertIsNone(parse_ship_date(None))

    def test_decode_url(self):
        self.assertEqual(decode_url("https&#58;//x/a?b=1&amp;c=2"), "https://x/a?b=1&c=2")
        self.assertIsNone(decode_url(None))

    def test_document_section_without_document(self):
        self.assertEqual(document_section(None), {"HasDocument": False, "Reason": "No document information provided"})


class TestCostcoProcessor(unittest.TestCase):
    def test_submits_high_priority_flat_payload(self):
        queue = FakeQueueClient()
        processor = CostcoProcessor(queue, documents=DocumentResolver(), clock=lambda: 1700000000.5)
        result = asyncio.run(processor.process(_costco_item(), {"Status": "Draft"}))

        self.assertTrue(result.processed)
        self.assertEqual(result.reference, "COSTCO_4500__4501_17_1700000000500")
        call = queue.calls[0]
        self.assertEqual(call["queue"], "COSTCO-INLINE-Routing")
        self.assertEqual(call["priority"], "High")
        content = call["content"]
        self.assertEqual(content["ProcessType"], "COSTCO_INLINE_ROUTING")
        self.assertEqual(content["SharePointItemId"], "17")
        self.assertEqual(content["ShipDate"], "2024-05-07T00:00:00+00:00")
        self.assertEqual(content["ShipDateFormatted"], "5/7/2024")
        self.assertEqual(content["PONumber"], "4500, 4501")
        self.assertEqual(content["Document_HasDocument"], "true")
        self.assertEqual(content["Document_FileName"], "form.xlsx")
        for value in content.values():
            self.assertIsInstance(value, str)

    def test_queue_override(self):
        queue = FakeQueueClient()
        processor = CostcoProcessor(queue, queue_name="CostcoDev")
        asyncio.run(processor.process(_costco_item()))
        self.assertEqual(queue.calls[0]["queue"], "CostcoDev")

    def test_skips_other_status(self):
        queue = FakeQueueClient()
        result = asyncio.run(CostcoProcessor(queue).process(_costco_item(Status="Draft")))
        self.assertFalse(result.processed)
        self.assertEqual(queue.calls, [])

    def test_invalid_item_raises(self):
        queue = FakeQueueClient()
        with self.assertRaises(ValidationError):
            asyncio.run(CostcoProcessor(queue).process(_costco_item(ShiptoEmail="")))
        self.assertEqual(queue.calls, [])

    def test_missing_routing_form(self):
        queue = FakeQueueClient()
        asyncio.run(CostcoProcessor(queue).process(_costco_item(GeneratedRoutingFormURL=None)))
        content = queue.calls[0]["content"]
        self.assertEqual(content["Document_HasDocument"], "false")
        self.assertEqual(content["Document_Reason"], "No GeneratedRoutingFormURL field found")


class TestGenericDocumentProcessor(unittest.TestCase):
    def test_list_item_with_filters(self):
        queue = FakeQueueClient()
        processor = GenericDocumentProcessor(
            queue,
            exclude_fields=["Secret"],
            clock=lambda: 1.0,
        )
        item = ListItem(id="3", fields={"Title": "Quarterly report", "Secret": "x", "Amount": 5})
        result = asyncio.run(processor.process(item))

        self.assertTrue(result.processed)
        self.assertEqual(result.reference, "SPDOC_Quarterly_report_3_1000")
        call = queue.calls[0]
        self.assertEqual(call["queue"], "DefaultQueue")
        self.assertEqual(call["priority"], "Normal")
        self.assertEqual(call["content"]["Amount"], "5")
        self.assertNotIn("Secret", call["content"])

    def test_filters_apply_to_file_metadata(self):
        item = ListItem(
            id="3",
            fields={
                "Title": "Report",
                "FileRef": "/sites/ops/Shared/a.pdf",
                "UniqueId": "u-1",
                "Author": {"Email": "author@example.com"},
                "Amount": 5,
            },
        )

        queue = FakeQueueClient()
        processor = GenericDocumentProcessor(queue, exclude_fields=["FilePath", "CreatedBy"])
        asyncio.run(processor.process(item))
        content = queue.calls[0]["content"]
        self.assertNotIn("FilePath", content)
        self.assertNotIn("CreatedBy", content)
        self.assertEqual(content["UniqueId"], "u-1")

        queue = FakeQueueClient()
        processor = GenericDocumentProcessor(queue, include_fields=["Amount"])
        asyncio.run(processor.process(item))
        content = queue.calls[0]["content"]
        self.assertEqual(content["Amount"], "5")
        self.assertEqual(content["ListItemUniqueId"], "u-1")
        self.assertNotIn("FilePath", content)
        self.assertNotIn("UniqueId", content)

    def test_allowed_extensions(self):
        queue = FakeQueueClient()
        processor = GenericDocumentProcessor(queue, allowed_extensions=[".pdf"])
        skipped = asyncio.run(processor.process(DriveItem(id="d1", name="sheet.xlsx", file={})))
        self.assertFalse(skipped.processed)
        done = asyncio.run(processor.process(DriveItem(id="d2", name="scan.pdf", file={"mimeType": "application/pdf"})))
        self.assertTrue(done.processed)
        self.assertEqual(queue.calls[0]["content"]["FileName"], "scan.pdf")

    def test_requires_queue(self):
        processor = GenericDocumentProcessor(FakeQueueClient(default_queue=""))
        with self.assertRaises(ValidationError):
            asyncio.run(processor.process(ListItem(id="1", fields={"Title": "A"})))


if __name__ == "__main__":
    unittest.main()
