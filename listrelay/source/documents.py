"""Document references from SharePoint hyperlink fields.

Hyperlink columns arrive either as a bare URL or as an HTML anchor. ``extract_document_reference``
pulls out the URL, file name and (for Office viewer links) the document id, and builds a
normalized viewer URL. ``DocumentResolver`` turns a reference into something a queue robot can
use, under one of four strategies.
"""

import base64
import re
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import quote, unquote_plus, urlparse

from bs4 import BeautifulSoup
from pydantic import BaseModel

from listrelay.config import SHAREPOINT_DOMAIN
from listrelay.errors import RelayError, ValidationError
from listrelay.source.graph_client import SharePointClient
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.source.documents")

# Orchestrator payload ceilings
MAX_QUEUE_ITEM_SIZE = 5 * 1024 * 1024
MAX_SPECIFIC_CONTENT_SIZE = 4 * 1024 * 1024
MAX_BASE64_FILE_SIZE = 3 * 1024 * 1024

UNKNOWN_FILE = "unknown_file"
SPREADSHEET_EXTENSIONS = ("xlsx", "xls", "csv")

_SOURCEDOC = re.compile(r"sourcedoc=(?:%7B|\{)([^}%]+)(?:%7D|\})", re.IGNORECASE)
_FILE_PARAM = re.compile(r"(?:^|[?&;])file=([^&]+)")
_SITE_PATH = re.compile(r"(/sites/[^/?#]+)")


DocumentStrategy = Literal["url_reference", "download_url", "base64_content", "sharepoint_hyperlink"]

STRATEGY_URL_REFERENCE: DocumentStrategy = "url_reference"
STRATEGY_DOWNLOAD_URL: DocumentStrategy = "download_url"
STRATEGY_BASE64_CONTENT: DocumentStrategy = "base64_content"
STRATEGY_SHAREPOINT_HYPERLINK: DocumentStrategy = "sharepoint_hyperlink"


class DocumentReference(BaseModel):
    url: str
    file_name: str
    clean_url: str
    document_id: str | None = None
    site_name: str | None = None
    kind: str = "direct_url"

    @property
    def extension(self) -> str:
        return file_extension(self.file_name)


def file_extension(file_name: str | None) -> str:
    if not file_name:
        return ""
    dot = file_name.rfind(".")
    return file_name[dot + 1 :].lower() if dot > 0 else ""


def extract_file_name(url: str | None) -> str:
    """File name from a ``file=`` query parameter, else the last path segment."""
    if not url:
        return UNKNOWN_FILE
    m = _FILE_PARAM.search(url)
    if m:
        return unquote_plus(m.group(1))
    last = url.rstrip("/").split("/")[-1]
    return last.split("?")[0] or UNKNOWN_FILE


def build_clean_url(url: str, document_id: str | None, file_name: str | None) -> str:
    """Office viewer URL when id and name are known, else the original with ``&amp;`` undone."""
    if document_id and file_name:
        site = _SITE_PATH.search(url)
        site_path = site.group(1) if site else "/sites/unknown"
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else ""
        doc_id = document_id.strip("{}")
        return (
            f"{origin}{site_path}/_layouts/15/Doc.aspx?sourcedoc={{{doc_id}}}"
            f"&file={quote(file_name, safe='')}&action=default&mobileredirect=true"
        )
    return url.replace("&amp;", "&")


def _document_id(url: str) -> str | None:
    m = _SOURCEDOC.search(url)
    return m.group(1) if m else None


def extract_document_reference(
    content: str | None,
    site_domain: str = SHAREPOINT_DOMAIN,
) -> DocumentReference | None:
    """Parse a raw URL or an HTML anchor into a DocumentReference; None when there is no link."""
    if not content or not isinstance(content, str):
        return None
    content = content.strip()

    if "<" not in content or ">" not in content:
        url = content
        file_name = extract_file_name(url)
        document_id = _document_id(url)
        return DocumentReference(
            url=url,
            file_name=file_name,
            document_id=document_id,
            clean_url=build_clean_url(url, document_id, file_name),
            kind="direct_url",
        )

    anchor = BeautifulSoup(content, "lxml").find("a", href=True)
    if anchor is None:
        logger.warning("documents.extract.no_href", content=content[:200])
        return None
    url = anchor["href"].strip()
    file_name = anchor.get_text(strip=True)
    if not file_name:
        file_name = extract_file_name(url)

    if url.startswith("/"):
        url = f"https://{site_domain}{url}"

    document_id = _document_id(url)
    file_param = _FILE_PARAM.search(url)
    if file_param:
        file_name = unquote_plus(file_param.group(1))

    site = re.search(r"/sites/([^/?#]+)", url)
    return DocumentReference(
        url=url,
        file_name=file_name,
        document_id=document_id,
        site_name=site.group(1) if site else None,
        clean_url=build_clean_url(url, document_id, file_name),
        kind="sharepoint_hyperlink",
    )


def recommend_strategy(
    file_name: str | None,
    estimated_size: int | None = None,
    is_hyperlink: bool = False,
) -> DocumentStrategy:
    if is_hyperlink:
        return STRATEGY_SHAREPOINT_HYPERLINK
    if file_extension(file_name) in SPREADSHEET_EXTENSIONS:
        return STRATEGY_DOWNLOAD_URL
    if estimated_size and estimated_size > MAX_BASE64_FILE_SIZE:
        return STRATEGY_DOWNLOAD_URL
    return STRATEGY_URL_REFERENCE


class DocumentResolver:
    """Resolves hyperlink field content into queue-friendly document descriptions."""

    def __init__(
        self,
        source: SharePointClient | None = None,
        site_domain: str = SHAREPOINT_DOMAIN,
    ):
        self._source = source
        self._site_domain = site_domain

    def extract(self, content: str | None) -> DocumentReference | None:
        return extract_document_reference(content, site_domain=self._site_domain)

    async def download_url(self, document_id: str, site_id: str) -> str:
        """Time-limited direct download URL for a drive item."""
        if self._source is None:
            raise ValidationError("A source client is required to resolve download URLs")
        item = await self._source.get_drive_item(site_id, document_id)
        if item.download_url:
            return item.download_url
        if item.webUrl:
            separator = "&" if "?" in item.webUrl else "?"
            return f"{item.webUrl}{separator}download=1"
        raise ValidationError(
            "Drive item has neither a download URL nor a web URL",
            {"document_id": document_id},
        )

    async def resolve(
        self,
        content: str | None,
        strategy: DocumentStrategy = STRATEGY_URL_REFERENCE,
        site_id: str | None = None,
        max_file_size: int = MAX_BASE64_FILE_SIZE,
    ) -> dict[str, Any]:
        """Describe the document in content according to strategy. Raises on unusable input."""
        reference = self.extract(content)
        if reference is None:
            logger.warning("documents.resolve.no_document", content=(content or "")[:100])
            return {"hasDocument": False, "strategy": "none", "error": "No document information found"}

        result: dict[str, Any] = {
            "hasDocument": True,
            "strategy": strategy,
            "fileName": reference.file_name,
            "originalUrl": reference.url,
            "documentId": reference.document_id,
            "fileExtension": reference.extension,
        }

        if strategy == STRATEGY_URL_REFERENCE:
            result["documentUrl"] = reference.url
            result["requiresDownload"] = True

        elif strategy in (STRATEGY_DOWNLOAD_URL, STRATEGY_BASE64_CONTENT):
            if not reference.document_id or not site_id or self._source is None:
                raise ValidationError(
                    f"Document id, site id and a source client are required for {strategy}",
                    {"document_id": reference.document_id, "site_id": site_id},
                )
            url = await self.download_url(reference.document_id, site_id)
            if strategy == STRATEGY_DOWNLOAD_URL:
                result["downloadUrl"] = url
                result["requiresDownload"] = True
            else:
                data, content_type = await self._source.download(url, max_file_size)
                result["content"] = base64.b64encode(data).decode("ascii")
                result["size"] = len(data)
                result["contentType"] = content_type or "application/octet-stream"
                result["encoding"] = "base64"
                result["requiresDownload"] = False

        elif strategy == STRATEGY_SHAREPOINT_HYPERLINK:
            result["documentUrl"] = reference.clean_url or reference.url
            result["cleanUrl"] = reference.clean_url
            result["requiresDownload"] = True
            if reference.document_id and site_id and self._source is not None:
                try:
                    result["directDownloadUrl"] = await self.download_url(reference.document_id, site_id)
                except RelayError as e:
                    if e.status_code in (401, 403):
                        raise
                    logger.warning(
                        "documents.resolve.download_url_unavailable",
                        document_id=reference.document_id,
                        error=str(e),
                    )

        else:
            raise ValueError(f"Unknown document strategy: {strategy!r}")

        logger.info(
            "documents.resolve.ok",
            file_name=reference.file_name,
            strategy=strategy,
            size=result.get("size"),
        )
        return result

    async def create_document_reference(
        self,
        content: str | None,
        site_id: str | None = None,
    ) -> dict[str, Any]:
        """Hyperlink-strategy reference for a queue item. Never raises."""
        try:
            result = await self.resolve(content, STRATEGY_SHAREPOINT_HYPERLINK, site_id=site_id)
        except Exception as e:
            logger.error("documents.reference.error", error=str(e), content=(content or "")[:100])
            reference = self.extract(content)
            if reference is not None:
                return {
                    "hasDocument": True,
                    "fileName": reference.file_name,
                    "documentUrl": reference.clean_url or reference.url,
                    "originalUrl": reference.url,
                    "fallback": True,
                    "error": str(e),
                }
            return {"hasDocument": False, "error": str(e), "originalContent": (content or "")[:100]}

        if not result.get("hasDocument"):
            return {
                "hasDocument": False,
                "error": result.get("error") or "Could not process SharePoint hyperlink",
                "originalContent": (content or "")[:100],
            }
        return {
            "hasDocument": True,
            "fileName": result["fileName"],
            "fileExtension": result["fileExtension"],
            "documentUrl": result["documentUrl"],
            "cleanUrl": result.get("cleanUrl"),
            "originalUrl": result["originalUrl"],
            "directDownloadUrl": result.get("directDownloadUrl"),
            "strategy": STRATEGY_SHAREPOINT_HYPERLINK,
            "processedAt": datetime.now(timezone.utc).isoformat(),
        }
