"""Tests for SpecificContent flattening, key encoding and field filters."""

import sys
import unittest
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from listrelay.queue.payload import (
    QueueItemPayload,
    build_item_content,
    build_payload,
    encode_field_name,
    flatten,
    stringify,
)
from listrelay.source.models import DriveItem, ListItem


class TestEncodeFieldName(unittest.TestCase):
    def test_fixed_mapping(self):
        self.assertEqual(encode_field_name("Ship Date"), "Ship_x0020_Date")
        self.assertEqual(encode_field_name("PO_no"), "PO_x005f_no")

    def test_generic_substitutions(self):
        self.assertEqual(encode_field_name("Cost (USD)"), "Cost_x0020__x0028_USD_x0029_")
        self.assertEqual(encode_field_name("R&D"), "R_x0026_D")
        self.assertEqual(encode_field_name("Title"), "Title")

    def test_encoding_is_idempotent(self):
        for name in ("Ship Date", "Cost (USD)", "a_b", "Plain", "R&D's"):
            once = encode_field_name(name)
            self.assertEqual(encode_field_name(once), once)


class TestBuildPayload(unittest.TestCase):
    def test_nested_object_is_flattened_and_stringified(self):
        self.assertEqual(build_payload({"Title": "A", "Nested": {"X": 1}}), {"Title": "A", "Nested_X": "1"})

    def test_value_stringification(self):
        payload = build_payload(
            {"Flag": True, "Off": False, "Missing": None, "Tags": ["a", "b"], "When": date(2024, 1, 2)}
        )
        self.assertEqual(
            payload,
            {"Flag": "true", "Off": "false", "Missing": "", "Tags": "a,b", "When": "2024-01-02"},
        )
        for value in payload.values():
            self.assertIsInstance(value, str)

    def test_reserved_keys_skipped(self):
        payload = build_payload(
            {
                "@odata.etag": "x",
                "Title": "A",
                "fields": {"Hidden": 1},
                "Info": {"@odata.type": "t", "Size": 3},
            }
        )
        self.assertEqual(payload, {"Title": "A", "Info_Size": "3"})

    def test_flatten_is_idempotent_on_flat_map(self):
        nested = {"a": {"b": {"c": 1}}, "d": "x"}
        flat = flatten(nested)
        self.assertEqual(flat, {"a_b_c": "1", "d": "x"})
        self.assertEqual(flatten(flat), flat)
        self.assertEqual(flatten(None), {})

    def test_include_and_exclude(self):
        source = {"Title": "A", "Status": "Open", "Nested": {"X": 1, "Y": 2}, "Ship Date": "1/2/2024"}
        self.assertEqual(build_payload(source, include_fields=["Title", "Nested"]), {"Title": "A", "Nested_X": "1", "Nested_Y": "2"})
        self.assertEqual(
            build_payload(source, exclude_fields=["Status", "Ship_x0020_Date"]),
            {"Title": "A", "Nested_X": "1", "Nested_Y": "2"},
        )
        self.assertEqual(build_payload(source, include_fields=[]), {})

    def test_keep_bypasses_filters(self):
        payload = build_payload({"ItemId": "1", "Title": "A"}, include_fields=["Title"], keep=["ItemId"])
        self.assertEqual(payload, {"ItemId": "1", "Title": "A"})

    def test_stringify_dict_in_list(self):
        self.assertEqual(stringify([{"a": 1}, 2]), '{"a": 1},2')


class TestBuildItemContent(unittest.TestCase):
    def test_list_item(self):
        item = ListItem(
            id="5",
            webUrl="https://contoso.sharepoint.com/sites/ops/Lists/Orders/5_.000",
            lastModifiedDateTime="2024-05-01T10:00:00Z",
            parentReference={"siteId": "site-1"},
            fields={"Title": "Order 5", "Status": "Open", "@odata.etag": "e"},
        )
        content = build_item_content(item, exclude_fields=["Status"])
        self.assertEqual(content["ItemId"], "5")
        self.assertEqual(content["Title"], "Order 5")
        self.assertEqual(content["ParentSite"], "site-1")
        self.assertEqual(content["LastModified"], "2024-05-01T10:00:00Z")
        self.assertNotIn("Status", content)
        self.assertNotIn("fields_Title", content)
        self.assertFalse(any(key.startswith("@") for key in content))

    def test_base_metadata_survives_include_filter(self):
        item = ListItem(id="9", fields={"Title": "T", "Amount": 3})
        content = build_item_content(item, include_fields=["Amount"])
        self.assertEqual(content["ItemId"], "9")
        self.assertEqual(content["Title"], "T")
        self.assertEqual(content["Amount"], "3")

    def test_drive_item(self):
        item = DriveItem(
            id="d1",
            name="report.pdf",
            size=2048,
            file={"mimeType": "application/pdf", "hashes": {"sha1Hash": "abc"}},
            parentReference={"path": "/drive/root:/Shared"},
        )
        content = build_item_content(item)
        self.assertEqual(content["FileName"], "report.pdf")
        self.assertEqual(content["FileHash"], "abc")
        self.assertEqual(content["FileSizeBytes"], "2048")
        self.assertEqual(content["ParentPath"], "/drive/root:/Shared")
        self.assertEqual(content["FileType"], "application/pdf")
        self.assertEqual(content["file_mimeType"], "application/pdf")


class TestQueueItemPayload(unittest.TestCase):
    def test_item_data_shape(self):
        payload = QueueItemPayload(queue_name="Q", reference="r-1", specific_content={"A": "1"})
        data = payload.to_item_data()
        self.assertEqual(data["Name"], "Q")
        self.assertEqual(data["Priority"], "Normal")
        self.assertEqual(data["SpecificContent"], {"A": "1"})
        self.assertEqual(data["Reference"], "r-1")
        self.assertNotIn("OutputData", data)


if __name__ == "__main__":
    unittest.main()
