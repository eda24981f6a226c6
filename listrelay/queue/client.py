"""UiPath Orchestrator queue client (async).

``submit`` validates the item locally (the item Name must equal the target queue), then posts
it to ``AddQueueItem``. Network errors and 5xx responses are retried with exponential backoff;
4xx responses are never retried and surface as ``RelayError`` subclasses carrying the
Orchestrator response body. The client does no deduplication: two items with the same
reference are both submitted.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx
from pydantic import BaseModel

from listrelay.auth.token_cache import CredentialCache, uipath_token_fetcher
from listrelay.config import (
    UIPATH_AUTO_RETRY,
    UIPATH_ENABLED,
    UIPATH_IDENTITY_URL,
    UIPATH_RETRY_ATTEMPTS,
    UIPATH_RETRY_BASE_DELAY,
    UIPATH_SCOPE,
    UIPATH_TIMEOUT_SECONDS,
)
from listrelay.errors import (
    ExternalServiceError,
    InternalError,
    RelayError,
    ValidationError,
    error_from_status,
)
from listrelay.queue.payload import DEFAULT_PRIORITY, PRIORITIES, Priority, QueueItemPayload
from listrelay.routing.environment import QueueSettings
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.queue.client")

ADD_QUEUE_ITEM_PATH = "/odata/Queues/UiPathODataSvc.AddQueueItem"
QUEUE_ITEMS_PATH = "/odata/QueueItems"
NULL_PARAMETERS_MESSAGE = "queueItemParameters must not be null"

Sleep = Callable[[float], Awaitable[Any]]


class SubmissionResult(BaseModel):
    success: bool
    queue_name: str
    queue_item_id: int | str | None = None
    status: str | None = None
    creation_time: str | None = None
    priority: str | None = None
    reference: str | None = None
    duration_ms: int | None = None
    reason: str | None = None


def _is_retryable_network_error(e: Exception) -> bool:
    return isinstance(
        e,
        (
            httpx.ConnectError,
            httpx.ReadError,
            httpx.WriteError,
            httpx.RemoteProtocolError,
            httpx.TimeoutException,
            ConnectionResetError,
        ),
    )


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def _response_message(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if body.get("message"):
            return str(body["message"])
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return "Invalid request"


def _acceptable_value(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool)) and not callable(value)


def validate_item_data(queue_name: str, item_data: Mapping[str, Any]) -> None:
    """Local checks on an ``itemData`` object; raises ValidationError, never touches the network."""
    if not isinstance(item_data, Mapping):
        raise ValidationError("Queue itemData must be an object")
    name = item_data.get("Name")
    if not name:
        raise ValidationError("Queue itemData.Name is required", {"queue_name": queue_name})
    if name != queue_name:
        raise ValidationError(
            f"Queue itemData.Name ({name}) must exactly match target queue name ({queue_name})",
            {"item_name": name, "queue_name": queue_name},
        )
    priority = item_data.get("Priority")
    if priority is not None and priority not in PRIORITIES:
        raise ValidationError(
            f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}",
            {"priority": priority},
        )
    content = item_data.get("SpecificContent")
    if content is None:
        return
    if not isinstance(content, Mapping):
        raise ValidationError("Queue itemData.SpecificContent must be an object or null")
    for key, value in content.items():
        if not _acceptable_value(value):
            raise ValidationError(
                f"SpecificContent value for {key!r} must be a flat scalar, got {type(value).__name__}",
                {"key": key, "type": type(value).__name__},
            )


class QueueClient:
    """Submits and reads queue items for one Orchestrator tenant / organization unit."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialCache,
        settings: QueueSettings,
        provider_key: str = "uipath",
        enabled: bool = UIPATH_ENABLED,
        auto_retry: bool = UIPATH_AUTO_RETRY,
        retry_attempts: int = UIPATH_RETRY_ATTEMPTS,
        base_delay: float = UIPATH_RETRY_BASE_DELAY,
        timeout: float = UIPATH_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._http = http_client
        self._credentials = credentials
        self._settings = settings
        self._provider_key = provider_key
        self._enabled = enabled
        self._retries = max(0, retry_attempts) if auto_retry else 0
        self._base_delay = base_delay
        self._timeout = timeout
        self._sleep = sleep

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    def _headers(self, token: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._settings.organization_unit_id:
            headers["X-UIPATH-OrganizationUnitId"] = self._settings.organization_unit_id
        if self._settings.tenant_name:
            headers["X-UIPATH-TenantName"] = self._settings.tenant_name
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Authorized request with retry on network errors and 5xx. Returns the last response."""
        if not self._settings.orchestrator_url:
            raise ValidationError("Orchestrator URL is not configured")
        url = f"{self._settings.orchestrator_url.rstrip('/')}{path}"
        token = await self._credentials.get_token(self._provider_key)
        headers = self._headers(token)

        attempt = 0
        while True:
            try:
                response = await self._http.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=headers,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as e:
                if attempt < self._retries and _is_retryable_network_error(e):
                    attempt += 1
                    await self._backoff(attempt, url, error_type=type(e).__name__)
                    continue
                raise self._network_error(e, url) from e
            if response.status_code >= 500 and attempt < self._retries:
                attempt += 1
                await self._backoff(attempt, url, status=response.status_code)
                continue
            return response

    async def _backoff(self, attempt: int, url: str, **context: Any) -> None:
        delay = self._base_delay * (2 ** (attempt - 1))
        logger.warning("queue.request.retry", url=url, retry=attempt, delay=delay, **context)
        await self._sleep(delay)

    def _network_error(self, e: Exception, url: str) -> RelayError:
        if isinstance(e, httpx.TimeoutException):
            return ExternalServiceError(
                "UiPath Orchestrator request timed out",
                {"url": url, "error": str(e)},
                status_code=408,
            )
        if isinstance(e, httpx.ConnectError):
            return ExternalServiceError(
                "Cannot connect to UiPath Orchestrator",
                {"url": url, "error": str(e)},
                status_code=503,
            )
        return ExternalServiceError(
            f"UiPath Orchestrator request failed: {e}",
            {"url": url, "error_type": type(e).__name__},
        )

    def _status_error(self, response: httpx.Response, queue_name: str | None) -> RelayError:
        status = response.status_code
        body = _response_body(response)
        details: dict[str, Any] = {"response": body, "status": status}
        if status == 400:
            message = _response_message(body)
            if NULL_PARAMETERS_MESSAGE in message:
                details["suggestion"] = "Verify the queue name matches exactly between URL and itemData.Name"
                details["queue_name"] = queue_name
                return ValidationError(f"UiPath API rejected payload: {NULL_PARAMETERS_MESSAGE}", details)
            return ValidationError(f"UiPath API validation error: {message}", details)
        if status == 401:
            self._credentials.clear(self._provider_key)
            message = "UiPath authentication failed, check credentials and token validity"
        elif status == 403:
            message = "UiPath authorization failed, check permissions for queue operations"
        elif status == 404:
            message = (
                f"UiPath queue {queue_name!r} not found, verify the queue exists "
                "and the organization unit id is correct"
            )
        elif status >= 500:
            message = "UiPath Orchestrator server error"
        else:
            message = f"UiPath request failed with status {status}"
        retry_after = response.headers.get("retry-after")
        return error_from_status(
            status,
            message,
            details,
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )

    async def submit(
        self,
        queue_name: str | None,
        item_data: Mapping[str, Any] | QueueItemPayload,
    ) -> SubmissionResult:
        """Add one item to queue_name (default queue when None)."""
        target = queue_name or self._settings.default_queue
        if not self._enabled:
            logger.warning("queue.submit.disabled", queue=target)
            return SubmissionResult(success=False, queue_name=target or "", reason="Queue submission disabled")
        if not target:
            raise ValidationError("Queue name is required (not provided and no default configured)")

        data = item_data.to_item_data() if isinstance(item_data, QueueItemPayload) else dict(item_data)
        if data.get("Priority") is None:
            data["Priority"] = DEFAULT_PRIORITY
        validate_item_data(target, data)

        logger.info(
            "queue.submit.start",
            queue=target,
            priority=data["Priority"],
            reference=data.get("Reference"),
            content_keys=len(data.get("SpecificContent") or {}),
        )
        started = time.monotonic()
        response = await self._send("POST", ADD_QUEUE_ITEM_PATH, json={"itemData": data})
        duration_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            error = self._status_error(response, target)
            logger.error(
                "queue.submit.failed",
                queue=target,
                status=response.status_code,
                error=error.message,
            )
            raise error

        body = _response_body(response)
        if not isinstance(body, dict) or not body.get("Id"):
            raise InternalError(
                "Invalid response from UiPath queue submission: no item Id",
                {"response": body},
            )
        result = SubmissionResult(
            success=True,
            queue_name=target,
            queue_item_id=body["Id"],
            status=body.get("Status"),
            creation_time=body.get("CreationTime"),
            priority=body.get("Priority"),
            reference=body.get("Reference"),
            duration_ms=duration_ms,
        )
        logger.info(
            "queue.submit.ok",
            queue=target,
            queue_item_id=result.queue_item_id,
            reference=result.reference,
            duration_ms=duration_ms,
        )
        return result

    async def enqueue(
        self,
        queue_name: str | None,
        specific_content: Mapping[str, str],
        *,
        reference: str | None = None,
        priority: Priority = DEFAULT_PRIORITY,
        defer_date: str | None = None,
        due_date: str | None = None,
    ) -> SubmissionResult:
        """Submit already-built SpecificContent (see ``build_payload`` / ``build_item_content``)."""
        target = queue_name or self._settings.default_queue
        payload = QueueItemPayload(
            queue_name=target or "",
            priority=priority,
            reference=reference,
            specific_content=dict(specific_content),
            defer_date=defer_date,
            due_date=due_date,
        )
        return await self.submit(target, payload)

    async def get_queue_items(
        self,
        queue_name: str | None = None,
        status: str | None = None,
        top: int = 100,
    ) -> list[dict[str, Any]]:
        filters = []
        if queue_name:
            filters.append(f"QueueDefinition/Name eq '{queue_name}'")
        if status:
            filters.append(f"Status eq '{status}'")
        params: dict[str, Any] = {"$top": str(top), "$orderby": "CreationTime desc"}
        if filters:
            params["$filter"] = " and ".join(filters)
        response = await self._send("GET", QUEUE_ITEMS_PATH, params=params)
        if response.status_code >= 400:
            raise self._status_error(response, queue_name)
        body = _response_body(response)
        return body.get("value", []) if isinstance(body, dict) else []

    async def get_queue_item(self, queue_item_id: int | str) -> dict[str, Any]:
        response = await self._send("GET", f"{QUEUE_ITEMS_PATH}({queue_item_id})")
        if response.status_code >= 400:
            raise self._status_error(response, None)
        return _response_body(response)


class QueueClientFactory:
    """One QueueClient per resolved QueueSettings, sharing the HTTP client and credential cache."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialCache,
        identity_url: str = UIPATH_IDENTITY_URL,
        scope: str | None = UIPATH_SCOPE,
        **client_options: Any,
    ):
        self._http = http_client
        self._credentials = credentials
        self._identity_url = identity_url
        self._scope = scope
        self._client_options = client_options
        self._clients: dict[QueueSettings, QueueClient] = {}

    @staticmethod
    def provider_key(settings: QueueSettings) -> str:
        return f"uipath:{settings.tenant_name or 'default'}:{settings.client_id}"

    def for_settings(self, settings: QueueSettings) -> QueueClient:
        client = self._clients.get(settings)
        if client is not None:
            return client
        key = self.provider_key(settings)
        if not self._credentials.is_registered(key):
            self._credentials.register(
                key,
                uipath_token_fetcher(
                    self._http,
                    self._identity_url,
                    settings.client_id,
                    settings.client_secret,
                    scope=self._scope,
                ),
                tenant=settings.tenant_name,
                client_id=settings.client_id,
            )
        client = QueueClient(
            self._http,
            self._credentials,
            settings,
            provider_key=key,
            **self._client_options,
        )
        self._clients[settings] = client
        logger.debug(
            "queue.client.created",
            tenant=settings.tenant_name,
            organization_unit_id=settings.organization_unit_id,
        )
        return client
