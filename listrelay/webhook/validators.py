"""Schema checks for inbound notification batches and subscription requests.

A batch is accepted or rejected as a whole: the first malformed notification raises a
``ValidationError`` naming its index and the expected shape.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError as ModelValidationError

from listrelay.errors import ValidationError
from listrelay.webhook.models import Notification, ResourcePath, SubscriptionRequest

VALID_CHANGE_TYPES = ("created", "updated", "deleted")
ODATA_TYPE_PREFIX = "#Microsoft.Graph."
MAX_CLIENT_STATE_LENGTH = 128
MAX_SUBSCRIPTION_DAYS = 3
MAX_SANITIZED_LENGTH = 1000

_RESOURCE_PATTERN = re.compile(
    r"^sites/(?P<domain>[^/]+):/sites/(?P<site>[^/]+):/lists/(?P<list>[a-f0-9-]+)$",
    re.IGNORECASE,
)
_GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def _required_string(entry: dict[str, Any], key: str, index: int) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"Notification at index {index} must have a non-empty string '{key}'",
            {"index": index, "field": key, "expected": "non-empty string"},
        )
    return value.strip()


def validate_notification(entry: Any, index: int = 0) -> Notification:
    """Validate one notification dict and return the normalized model."""
    if not isinstance(entry, dict):
        raise ValidationError(
            f"Notification at index {index} must be an object",
            {"index": index, "expected": "object"},
        )

    subscription_id = _required_string(entry, "subscriptionId", index)
    resource = _required_string(entry, "resource", index)

    change_type = entry.get("changeType")
    if not isinstance(change_type, str) or change_type.strip().lower() not in VALID_CHANGE_TYPES:
        raise ValidationError(
            f"Notification at index {index} has invalid changeType {change_type!r}",
            {"index": index, "field": "changeType", "expected": list(VALID_CHANGE_TYPES)},
        )

    client_state = entry.get("clientState")
    if client_state is not None and not isinstance(client_state, str):
        raise ValidationError(
            f"Notification at index {index} has a non-string clientState",
            {"index": index, "field": "clientState", "expected": "string or null"},
        )

    tenant_id = entry.get("tenantId")
    if tenant_id is not None and not isinstance(tenant_id, str):
        raise ValidationError(
            f"Notification at index {index} has a non-string tenantId",
            {"index": index, "field": "tenantId", "expected": "string"},
        )

    resource_data = entry.get("resourceData")
    if resource_data is not None:
        if not isinstance(resource_data, dict):
            raise ValidationError(
                f"Notification at index {index} has a non-object resourceData",
                {"index": index, "field": "resourceData", "expected": "object"},
            )
        odata_type = resource_data.get("@odata.type")
        if odata_type is not None and (
            not isinstance(odata_type, str) or not odata_type.startswith(ODATA_TYPE_PREFIX)
        ):
            raise ValidationError(
                f"Notification at index {index} has unexpected resourceData @odata.type {odata_type!r}",
                {"index": index, "field": "resourceData.@odata.type", "expected": f"{ODATA_TYPE_PREFIX}*"},
            )

    try:
        return Notification(
            subscription_id=subscription_id,
            resource=resource,
            change_type=change_type.strip().lower(),
            client_state=client_state.strip() if client_state is not None else None,
            tenant_id=tenant_id.strip() if tenant_id else None,
            resource_data=resource_data,
            subscription_expiration_date_time=entry.get("subscriptionExpirationDateTime"),
        )
    except ModelValidationError as e:
        problem = e.errors()[0]
        field = ".".join(str(part) for part in problem["loc"])
        raise ValidationError(
            f"Notification at index {index} has an invalid {field}: {problem['msg']}",
            {"index": index, "field": field, "expected": problem["type"]},
        ) from None


def validate_notification_batch(body: Any) -> list[Notification]:
    """Validate a decoded webhook body ``{"value": [...]}``."""
    if not isinstance(body, dict):
        raise ValidationError(
            "Notification payload must be an object",
            {"expected": {"value": "array of notifications"}},
        )
    entries = body.get("value")
    if not isinstance(entries, list):
        raise ValidationError(
            "Notification payload must contain a 'value' array",
            {"expected": {"value": "array of notifications"}},
        )
    return [validate_notification(entry, index) for index, entry in enumerate(entries)]


def parse_resource(resource: str) -> ResourcePath:
    """Split ``sites/{domain}:/sites/{site}:/lists/{list-id}`` into its parts."""
    if not isinstance(resource, str):
        raise ValidationError("Resource must be a string", {"resource": resource})
    match = _RESOURCE_PATTERN.match(resource.strip())
    if not match:
        raise ValidationError(
            "Invalid resource format. Expected: sites/{domain}:/sites/{site}:/lists/{list-id}",
            {"resource": resource},
        )
    return ResourcePath(
        domain=match.group("domain"),
        site_name=match.group("site"),
        list_id=match.group("list"),
    )


def validate_guid(value: Any, field_name: str = "id") -> str:
    if not isinstance(value, str) or not _GUID_PATTERN.match(value.strip()):
        raise ValidationError(f"{field_name} must be a valid GUID", {"field": field_name})
    return value.strip()


def sanitize_string(value: Any, max_length: int = MAX_SANITIZED_LENGTH) -> str:
    """Strip control characters, trim and truncate. Non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS.sub("", value).strip()[:max_length]


def validate_subscription_request(
    data: Any,
    now: datetime | None = None,
) -> SubscriptionRequest:
    """Validate a subscription create request against the host's lifetime and URL rules."""
    if not isinstance(data, dict):
        raise ValidationError("Subscription request must be an object")

    resource = data.get("resource")
    if not isinstance(resource, str) or not resource.strip():
        raise ValidationError("resource is required", {"field": "resource"})
    parse_resource(resource)

    change_type = data.get("changeType")
    if not isinstance(change_type, str) or change_type.strip().lower() not in VALID_CHANGE_TYPES:
        raise ValidationError(
            f"changeType must be one of: {', '.join(VALID_CHANGE_TYPES)}",
            {"field": "changeType"},
        )

    notification_url = data.get("notificationUrl")
    if not isinstance(notification_url, str) or not notification_url.strip():
        raise ValidationError("notificationUrl is required", {"field": "notificationUrl"})
    parsed_url = urlparse(notification_url.strip())
    if parsed_url.scheme != "https" or not parsed_url.netloc:
        raise ValidationError("notificationUrl must use HTTPS", {"field": "notificationUrl"})

    raw_expiration = data.get("expirationDateTime")
    if not isinstance(raw_expiration, str) or not raw_expiration.strip():
        raise ValidationError("expirationDateTime is required", {"field": "expirationDateTime"})
    try:
        expiration = datetime.fromisoformat(raw_expiration.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            "expirationDateTime must be an ISO-8601 timestamp",
            {"field": "expirationDateTime"},
        ) from None
    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if expiration <= now:
        raise ValidationError("expirationDateTime must be in the future", {"field": "expirationDateTime"})
    if expiration > now + timedelta(days=MAX_SUBSCRIPTION_DAYS):
        raise ValidationError(
            f"expirationDateTime cannot be more than {MAX_SUBSCRIPTION_DAYS} days in the future",
            {"field": "expirationDateTime"},
        )

    client_state = data.get("clientState")
    if client_state is not None:
        if not isinstance(client_state, str):
            raise ValidationError("clientState must be a string", {"field": "clientState"})
        if len(client_state) > MAX_CLIENT_STATE_LENGTH:
            raise ValidationError(
                f"clientState cannot exceed {MAX_CLIENT_STATE_LENGTH} characters",
                {"field": "clientState"},
            )

    return SubscriptionRequest(
        resource=resource.strip(),
        change_type=change_type.strip().lower(),
        notification_url=notification_url.strip(),
        expiration_date_time=expiration,
        client_state=client_state,
    )
