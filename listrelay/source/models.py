"""Pydantic models for the SharePoint records the relay reads through Microsoft Graph (subset we need).

List items and drive items name the same concepts differently; ``normalize_base_metadata``
maps either one onto a common base shape before payload flattening.
"""

from collections.abc import Mapping
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class ListItem(BaseModel):
    """Graph listItem with its ``fields`` expanded."""

    id: str
    webUrl: Optional[str] = None
    eTag: Optional[str] = None
    createdDateTime: Optional[str] = None
    lastModifiedDateTime: Optional[str] = None
    createdBy: Optional[dict[str, Any]] = None
    lastModifiedBy: Optional[dict[str, Any]] = None
    contentType: Optional[dict[str, Any]] = None
    parentReference: Optional[dict[str, Any]] = None
    fields: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "allow"}

    def record(self) -> dict[str, Any]:
        """Top-level properties with ``fields`` merged on top, ``fields`` kept for reference."""
        merged = self.model_dump(exclude_none=True)
        merged.update(self.fields)
        merged["fields"] = dict(self.fields)
        return merged


class DriveItem(BaseModel):
    """Graph driveItem (document library file)."""

    id: str
    name: Optional[str] = None
    webUrl: Optional[str] = None
    size: Optional[int] = None
    createdDateTime: Optional[str] = None
    lastModifiedDateTime: Optional[str] = None
    createdBy: Optional[dict[str, Any]] = None
    lastModifiedBy: Optional[dict[str, Any]] = None
    file: Optional[dict[str, Any]] = None
    folder: Optional[dict[str, Any]] = None
    parentReference: Optional[dict[str, Any]] = None
    fileSystemInfo: Optional[dict[str, Any]] = None
    sharepointIds: Optional[dict[str, Any]] = None
    download_url: Optional[str] = Field(None, alias="@microsoft.graph.downloadUrl")

    model_config = {"populate_by_name": True, "extra": "allow"}

    def record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


SourceItem = Union[ListItem, DriveItem]


def as_record(item: Mapping[str, Any] | SourceItem | None) -> dict[str, Any]:
    """Merged flat-ish dict view of a source item."""
    if item is None:
        return {}
    if isinstance(item, (ListItem, DriveItem)):
        return item.record()
    return dict(item)


def normalize_base_metadata(item: Mapping[str, Any] | SourceItem | None) -> dict[str, Any]:
    """Common identity and file metadata for list items and drive items."""
    record = as_record(item)
    fields = record.get("fields") if isinstance(record.get("fields"), dict) else {}
    sharepoint_ids = record.get("sharepointIds") or {}

    metadata: dict[str, Any] = {
        "ItemId": record.get("ID") or record.get("id"),
        "Title": record.get("Title") or record.get("FileLeafRef") or record.get("name"),
        "WebUrl": record.get("WebUrl") or record.get("webUrl"),
        "LastModified": (
            record.get("LastModifiedDateTime")
            or record.get("lastModifiedDateTime")
            or record.get("Modified")
        ),
        "Created": record.get("Created") or record.get("createdDateTime"),
        "ListItemUniqueId": (
            record.get("UniqueId")
            or record.get("listItemUniqueId")
            or sharepoint_ids.get("listItemUniqueId")
        ),
    }

    file_name = record.get("FileLeafRef") or (record.get("name") if record.get("file") else None)
    if file_name:
        metadata["FileName"] = file_name
    if record.get("FileRef"):
        metadata["FilePath"] = record["FileRef"]
    if record.get("FileDirRef"):
        metadata["FileDirectory"] = record["FileDirRef"]
    content_type = record.get("ContentType")
    if isinstance(record.get("contentType"), dict):
        content_type = content_type or record["contentType"].get("name")
    if content_type:
        metadata["ContentType"] = content_type
    file_type = fields.get("File_x0020_Type") or (record.get("file") or {}).get("mimeType")
    if file_type:
        metadata["FileType"] = file_type

    return {key: value for key, value in metadata.items() if value is not None}
