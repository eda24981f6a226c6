"""Pydantic models for SharePoint list change notification webhook payloads."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ChangeType = Literal["created", "updated", "deleted"]


class ResourceData(BaseModel):
    """Partial resource data optionally included in a change notification."""

    odata_type: str | None = Field(None, alias="@odata.type")
    id: str | None = None

    model_config = {"populate_by_name": True, "extra": "allow"}


class Notification(BaseModel):
    """Single validated change notification."""

    subscription_id: str = Field(..., alias="subscriptionId")
    resource: str
    change_type: ChangeType = Field(..., alias="changeType")
    client_state: str | None = Field(None, alias="clientState")
    tenant_id: str | None = Field(None, alias="tenantId")
    resource_data: ResourceData | None = Field(None, alias="resourceData")
    subscription_expiration_date_time: str | None = Field(
        None, alias="subscriptionExpirationDateTime"
    )

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def item_id(self) -> str | None:
        """Item id when the notification carries one (list webhooks usually do not)."""
        if self.resource_data and self.resource_data.id:
            return self.resource_data.id
        return None

    def to_wire(self) -> dict[str, Any]:
        """Camel-cased dict as received from the upstream sender."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SubscriptionRequest(BaseModel):
    """Validated subscription create request."""

    resource: str
    change_type: ChangeType = Field(..., alias="changeType")
    notification_url: str = Field(..., alias="notificationUrl")
    expiration_date_time: datetime = Field(..., alias="expirationDateTime")
    client_state: str | None = Field(None, alias="clientState")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class ResourcePath(BaseModel):
    """Components of a ``sites/{domain}:/sites/{site}:/lists/{list-id}`` resource."""

    domain: str
    site_name: str
    list_id: str
