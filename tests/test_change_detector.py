"""Tests for ChangeDetector diffs against stored snapshots."""

import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from listrelay.changes.detector import (
    NEW_ITEM_FIELD,
    ChangeDetector,
    compare_fields,
    infer_field_type,
    storage_key,
)
from listrelay.changes.state_store import InMemoryStateStore
from listrelay.source.models import ListItem
from listrelay.webhook.models import Notification

RESOURCE = "sites/contoso.sharepoint.com:/sites/ops:/lists/abc"


def _notification() -> Notification:
    return Notification(subscription_id="sub-1", resource=RESOURCE, change_type="updated", tenant_id="t1")


def _fetcher(item):
    async def fetch():
        return item

    return fetch


class BrokenStore(InMemoryStateStore):
    async def get(self, partition_key, row_key):
        raise ConnectionError("store offline")


class TestChangeDetector(unittest.TestCase):
    def test_no_snapshot_reports_new_item(self):
        detector = ChangeDetector(InMemoryStateStore())
        item = ListItem(id="1", fields={"Title": "Order 1", "Status": "Draft"})
        report = asyncio.run(detector.detect_changes(_notification(), _fetcher(item)))
        self.assertTrue(report.has_changes)
        self.assertTrue(report.is_new_item)
        self.assertEqual(len(report.changes), 1)
        self.assertEqual(report.changes[0].field, NEW_ITEM_FIELD)
        self.assertEqual(report.changes[0].new, "Order 1")
        self.assertIsNone(report.previous_fields)

    def test_second_notification_diffs_fields(self):
        store = InMemoryStateStore()
        detector = ChangeDetector(store)

        async def run():
            await detector.detect_changes(
                _notification(),
                _fetcher(ListItem(id="1", fields={"Title": "A", "Status": "Draft", "_UIVersionString": "1.0"})),
            )
            return await detector.detect_changes(
                _notification(),
                _fetcher(
                    ListItem(
                        id="1",
                        fields={"Title": "A", "Status": "Send Generated Form", "_UIVersionString": "2.0", "_Hidden": 1},
                    )
                ),
            )

        report = asyncio.run(run())
        self.assertTrue(report.has_changes)
        self.assertFalse(report.is_new_item)
        self.assertEqual(sorted(report.changed_fields()), ["Status", "_UIVersionString"])
        self.assertEqual(report.previous_fields["Status"], "Draft")
        self.assertEqual(report.previous_version, "1.0")
        self.assertEqual(report.current_version, "2.0")

    def test_unchanged_item(self):
        detector = ChangeDetector(InMemoryStateStore())
        item = ListItem(id="1", fields={"Title": "A"})

        async def run():
            await detector.detect_changes(_notification(), _fetcher(item))
            return await detector.detect_changes(_notification(), _fetcher(item))

        report = asyncio.run(run())
        self.assertFalse(report.has_changes)
        self.assertEqual(report.changes, [])

    def test_store_unavailable_degrades(self):
        detector = ChangeDetector(BrokenStore())
        report = asyncio.run(detector.detect_changes(_notification(), _fetcher(ListItem(id="1"))))
        self.assertFalse(report.has_changes)
        self.assertIn("store offline", report.error)

    def test_fetch_failure_degrades(self):
        async def fail():
            raise RuntimeError("graph down")

        report = asyncio.run(ChangeDetector(InMemoryStateStore()).detect_changes(_notification(), fail))
        self.assertFalse(report.has_changes)
        self.assertEqual(report.error, "graph down")

    def test_missing_item(self):
        report = asyncio.run(ChangeDetector(InMemoryStateStore()).detect_changes(_notification(), _fetcher(None)))
        self.assertFalse(report.has_changes)
        self.assertIsNotNone(report.error)


class TestHelpers(unittest.TestCase):
    def test_storage_key_replaces_separators(self):
        partition, row = storage_key("sites/a:/lists/b", "t1", "7")
        self.assertNotIn("/", partition)
        self.assertNotIn(":", partition)
        self.assertEqual(row, "7")

    def test_infer_field_type(self):
        self.assertEqual(infer_field_type("_UIVersionString"), "version")
        self.assertEqual(infer_field_type("ShipDate"), "date")
        self.assertEqual(infer_field_type("CustomerLookupId"), "lookup")
        self.assertEqual(infer_field_type("Title"), "text")

    def test_compare_skips_odata_and_private(self):
        changes = compare_fields({}, {"@odata.etag": "x", "_Private": 1, "Title": "A"})
        self.assertEqual([c.field for c in changes], ["Title"])
        self.assertIsNone(changes[0].old)


if __name__ == "__main__":
    unittest.main()
