"""Queue payload building: flatten arbitrary records into Orchestrator's flat SpecificContent.

SpecificContent only accepts a flat ``{name: string}`` map. ``build_payload`` flattens nested
mappings (keys joined with ``_``), stringifies values and encodes every key segment the way
SharePoint encodes internal field names (``Ship Date`` -> ``Ship_x0020_Date``). Already-encoded
sequences such as ``_x0020_`` are left alone, so encoding a key twice changes nothing.
"""

import json
import re
from collections.abc import Iterable, Iterator, Mapping
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from listrelay.source.models import SourceItem, as_record, normalize_base_metadata

Priority = Literal["Low", "Normal", "High"]
PRIORITIES: tuple[Priority, ...] = ("Low", "Normal", "High")
DEFAULT_PRIORITY: Priority = "Normal"

KEY_SEPARATOR = "_"

# Top-level Graph envelope keys; their useful parts are copied out explicitly.
ENVELOPE_KEYS = ("fields", "parentReference", "fileSystemInfo")

FIELD_NAME_MAPPINGS = {
    "Ship To Email": "Ship_x0020_To_x0020_Email",
    "Ship Date": "Ship_x0020_Date",
    "PO_no": "PO_x005f_no",
    "Generated Routing Form URL": "Generated_x0020_Routing_x0020_Form_x0020_URL",
}

_SUBSTITUTIONS = {
    " ": "_x0020_",
    "_": "_x005f_",
    "&": "_x0026_",
    "'": "_x0027_",
    "(": "_x0028_",
    ")": "_x0029_",
}
_ENCODABLE = re.compile(r"_x[0-9a-fA-F]{4}_|[ _&'()]")


def encode_field_name(name: str) -> str:
    """SharePoint-style encoding of one field name; known names use the fixed mapping."""
    mapped = FIELD_NAME_MAPPINGS.get(name)
    if mapped:
        return mapped
    return _ENCODABLE.sub(lambda m: _SUBSTITUTIONS.get(m.group(0), m.group(0)), name)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return ",".join(
            json.dumps(v, default=str) if isinstance(v, Mapping) else stringify(v) for v in value
        )
    return str(value)


def _is_reserved(key: str, depth: int) -> bool:
    if key.startswith("@"):
        return True
    return depth == 0 and key in ENVELOPE_KEYS


def _walk(
    source: Mapping[str, Any],
    path: tuple[str, ...] = (),
) -> Iterator[tuple[tuple[str, ...], str]]:
    for key, value in source.items():
        key = str(key)
        if _is_reserved(key, len(path)):
            continue
        if isinstance(value, Mapping):
            yield from _walk(value, path + (key,))
        else:
            yield path + (key,), stringify(value)


def flatten(source: Mapping[str, Any] | None) -> dict[str, str]:
    """Nested mapping -> flat ``{a_b_c: "value"}`` map, keys not encoded."""
    if not source:
        return {}
    return {KEY_SEPARATOR.join(path): value for path, value in _walk(source)}


def _matches(filters: Iterable[str], raw_key: str, encoded_key: str) -> bool:
    for name in filters:
        if name in (raw_key, encoded_key):
            return True
        if raw_key.startswith(name + KEY_SEPARATOR):
            return True
    return False


def build_payload(
    source: SourceItem | Mapping[str, Any] | None,
    include_fields: Iterable[str] | None = None,
    exclude_fields: Iterable[str] | None = None,
    keep: Iterable[str] = (),
) -> dict[str, str]:
    """Flatten then encode source into SpecificContent.

    include_fields / exclude_fields match a flattened key by its raw or encoded name, or by a
    top-level prefix (``Nested`` matches ``Nested_X``). Keys listed in keep bypass both filters.
    """
    record = as_record(source)
    include = list(include_fields) if include_fields is not None else None
    exclude = list(exclude_fields or ())
    keep = set(keep)

    content: dict[str, str] = {}
    for path, value in _walk(record):
        raw_key = KEY_SEPARATOR.join(path)
        encoded_key = KEY_SEPARATOR.join(encode_field_name(segment) for segment in path)
        if raw_key not in keep:
            if exclude and _matches(exclude, raw_key, encoded_key):
                continue
            if include is not None and not _matches(include, raw_key, encoded_key):
                continue
        content[encoded_key] = value
    return content


def build_item_content(
    item: SourceItem | Mapping[str, Any] | None,
    include_fields: Iterable[str] | None = None,
    exclude_fields: Iterable[str] | None = None,
) -> dict[str, str]:
    """SpecificContent for any list or drive item: base metadata plus every non-reserved field."""
    record = as_record(item)
    base = normalize_base_metadata(item)
    content: dict[str, Any] = dict(base)

    for key, value in record.items():
        if value is None or _is_reserved(key, 0):
            continue
        content[key] = value
    fields = record.get("fields")
    if isinstance(fields, Mapping):
        for key, value in fields.items():
            if value is not None:
                content[key] = value

    parent = record.get("parentReference")
    if isinstance(parent, Mapping):
        if parent.get("path"):
            content["ParentPath"] = parent["path"]
        if parent.get("siteId"):
            content["ParentSite"] = parent["siteId"]
    file_facet = record.get("file")
    if isinstance(file_facet, Mapping):
        sha1 = (file_facet.get("hashes") or {}).get("sha1Hash")
        if sha1:
            content["FileHash"] = sha1
        if record.get("size"):
            content["FileSizeBytes"] = record["size"]

    return build_payload(content, include_fields, exclude_fields, keep=base.keys())


class QueueItemPayload(BaseModel):
    """One queue item ready for submission; ``to_item_data`` gives the API's ``itemData``."""

    queue_name: str
    priority: Priority = DEFAULT_PRIORITY
    reference: str | None = None
    specific_content: dict[str, str] = Field(default_factory=dict)
    defer_date: str | None = None
    due_date: str | None = None
    output_data: dict[str, Any] | None = None
    analytics: dict[str, Any] | None = None

    def to_item_data(self) -> dict[str, Any]:
        item_data: dict[str, Any] = {
            "Name": self.queue_name,
            "Priority": self.priority,
            "SpecificContent": dict(self.specific_content),
            "Reference": self.reference,
            "DeferDate": self.defer_date,
            "DueDate": self.due_date,
        }
        if self.output_data:
            item_data["OutputData"] = self.output_data
        if self.analytics:
            item_data["Analytics"] = self.analytics
        return item_data
