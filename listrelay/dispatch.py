"""Dispatch core: route each validated notification to forwarding and/or a queue processor.

Per notification: recover the clientState (from the tracking list when Graph did not echo it),
forward when a ``forward:`` token is present, then, when the tokens ask for queue dispatch,
fetch the item (named by the delta query when the notification carries no id), resolve a
processor, diff against the last snapshot and let the processor submit. The snapshot is saved
only when the submission did not fail. Validation and downstream errors end that notification
only; credential errors end the batch.
"""

from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel

from listrelay.changes.delta import DeltaTracker
from listrelay.changes.detector import ChangeDetector
from listrelay.errors import RelayError, is_batch_fatal
from listrelay.forwarder import Forwarder, ForwardResult
from listrelay.processors.base import ProcessingContext, ProcessResult
from listrelay.queue.client import QueueClientFactory
from listrelay.routing.client_state import (
    KEY_PROCESSOR,
    ClientStateTokens,
    forward_config,
    queue_name_override,
    requests_queue_dispatch,
)
from listrelay.routing.environment import (
    EnvironmentPreset,
    QueueSettings,
    default_queue_settings,
    resolve_queue_settings,
)
from listrelay.routing.registry import ProcessorRegistry
from listrelay.source.documents import DocumentResolver
from listrelay.source.graph_client import SharePointClient, parse_item_resource
from listrelay.source.models import ListItem
from listrelay.utils.logger import get_logger
from listrelay.webhook.models import Notification
from listrelay.webhook.tracking import TrackingStore

logger = get_logger("listrelay.dispatch")

DISPATCHED_CHANGE_TYPES = ("created", "updated")


class NotificationOutcome(BaseModel):
    subscription_id: str
    change_type: str
    processed: bool = False
    processor: str | None = None
    reason: str | None = None
    error: str | None = None
    error_type: str | None = None
    forward: ForwardResult | None = None
    result: ProcessResult | None = None


def wants_queue_dispatch(tokens: ClientStateTokens) -> bool:
    """uipath tokens opt in; so does an explicit ``processor:<name>`` selector."""
    return requests_queue_dispatch(tokens) or tokens.has(KEY_PROCESSOR)


class Dispatcher:
    def __init__(
        self,
        registry: ProcessorRegistry,
        queue_clients: QueueClientFactory,
        source: SharePointClient | None = None,
        tracking: TrackingStore | None = None,
        change_detector: ChangeDetector | None = None,
        forwarder: Forwarder | None = None,
        documents: DocumentResolver | None = None,
        delta: DeltaTracker | None = None,
        base_settings: QueueSettings | None = None,
        presets: dict[str, EnvironmentPreset] | None = None,
    ):
        self.registry = registry
        self._queue_clients = queue_clients
        self._source = source
        self._tracking = tracking
        self._detector = change_detector
        self._forwarder = forwarder
        self._documents = documents or DocumentResolver(source)
        self._delta = delta
        self._base_settings = base_settings or default_queue_settings()
        self._presets = presets

    async def dispatch_batch(self, notifications: Sequence[Notification]) -> list[NotificationOutcome]:
        outcomes: list[NotificationOutcome] = []
        for index, notification in enumerate(notifications):
            try:
                outcomes.append(await self.dispatch(notification))
            except RelayError as e:
                remaining = notifications[index + 1 :]
                logger.error(
                    "dispatch.batch.aborted",
                    subscription_id=notification.subscription_id,
                    error=e.message,
                    error_type=e.kind,
                    skipped=len(remaining),
                )
                outcomes.append(self._failed(notification, e))
                outcomes.extend(
                    NotificationOutcome(
                        subscription_id=n.subscription_id,
                        change_type=n.change_type,
                        reason="Batch aborted after credential failure",
                    )
                    for n in remaining
                )
                break
        logger.info(
            "dispatch.batch.done",
            total=len(notifications),
            processed=sum(1 for o in outcomes if o.processed),
        )
        return outcomes

    async def _client_state(self, notification: Notification) -> str | None:
        if notification.client_state:
            return notification.client_state
        if self._tracking is None:
            return None
        client_state = await self._tracking.get_client_state(notification.subscription_id)
        if client_state:
            logger.debug(
                "dispatch.client_state.recovered",
                subscription_id=notification.subscription_id,
            )
        return client_state

    def _failed(self, notification: Notification, error: Exception) -> NotificationOutcome:
        return NotificationOutcome(
            subscription_id=notification.subscription_id,
            change_type=notification.change_type,
            error=error.message if isinstance(error, RelayError) else str(error),
            error_type=error.kind if isinstance(error, RelayError) else type(error).__name__,
        )

    async def dispatch(self, notification: Notification) -> NotificationOutcome:
        """Process one notification. Raises only for credential failures (batch-fatal)."""
        log = logger.bind(
            subscription_id=notification.subscription_id,
            resource=notification.resource,
            change_type=notification.change_type,
        )
        if self._tracking is not None:
            await self._tracking.record_notification(notification.subscription_id)

        try:
            return await self._dispatch(notification, log)
        except Exception as e:
            if isinstance(e, RelayError) and not is_batch_fatal(e):
                log.warning("dispatch.notification.failed", error=e.message, error_type=e.kind, details=e.details)
            elif not isinstance(e, RelayError):
                log.exception("dispatch.notification.error", error=str(e))
            if self._tracking is not None:
                await self._tracking.record_failure(notification.subscription_id, str(e))
            if is_batch_fatal(e):
                raise
            return self._failed(notification, e)

    async def _dispatch(self, notification: Notification, log: Any) -> NotificationOutcome:
        outcome = NotificationOutcome(
            subscription_id=notification.subscription_id,
            change_type=notification.change_type,
        )
        tokens = ClientStateTokens.parse(await self._client_state(notification))

        target = forward_config(tokens)
        if target is not None and self._forwarder is not None:
            outcome.forward = await self._forwarder.forward_with_config(notification, target)

        if not wants_queue_dispatch(tokens):
            outcome.reason = "Queue processing not requested"
            log.debug("dispatch.notification.no_queue", client_state=tokens.join())
            return outcome
        if notification.change_type not in DISPATCHED_CHANGE_TYPES:
            outcome.reason = f"Change type {notification.change_type!r} is not dispatched"
            return outcome
        if self._source is None:
            outcome.reason = "No source client configured"
            log.warning("dispatch.notification.no_source")
            return outcome

        resource_data = (
            notification.resource_data.model_dump(by_alias=True) if notification.resource_data else None
        )
        if not notification.item_id:
            resource_data = await self._delta_resource_data(notification, resource_data, log)
        item = await self._source.fetch_item(notification.resource, resource_data)
        if item is None:
            outcome.reason = "Unable to resolve SharePoint item"
            return outcome

        descriptor = self.registry.resolve(tokens, notification.resource, item.record())
        if descriptor is None:
            log.warning("dispatch.notification.no_processor", client_state=tokens.join())
            outcome.reason = "No matching processor registered"
            return outcome
        outcome.processor = descriptor.name

        settings = resolve_queue_settings(tokens, self._base_settings, self._presets)
        location = parse_item_resource(notification.resource, item_id=item.id)
        context = ProcessingContext(
            notification=notification,
            tokens=tokens,
            settings=settings,
            queue_client=self._queue_clients.for_settings(settings),
            queue_name=queue_name_override(tokens),
            documents=self._documents,
            site_id=location.site_id if location else None,
        )
        processor = descriptor.factory(context)
        previous_fields = await self._previous_fields(notification, item, log)

        result = await processor.process(item, previous_fields)
        if self._detector is not None and (result.submission is None or result.submission.success):
            await self._detector.save_snapshot(notification, item)
        outcome.result = result
        outcome.processed = result.processed
        outcome.reason = result.reason
        log.info(
            "dispatch.notification.processed",
            processor=descriptor.name,
            processed=result.processed,
            reference=result.reference,
        )
        return outcome

    async def _previous_fields(self, notification: Notification, item: ListItem, log: Any) -> dict[str, Any] | None:
        if self._detector is None:
            return None

        async def current() -> ListItem:
            return item

        report = await self._detector.detect_changes(notification, current, save=False)
        if report.error:
            log.warning("dispatch.change_detection.unavailable", error=report.error)
        return report.previous_fields

    async def _delta_resource_data(
        self,
        notification: Notification,
        resource_data: dict[str, Any] | None,
        log: Any,
    ) -> dict[str, Any] | None:
        """resourceData naming the most recently changed item per the delta query.

        Returns resource_data unchanged when there is no tracker or the query yields nothing,
        leaving fetch_item to fall back to the most recently modified item.
        """
        location = parse_item_resource(notification.resource)
        if self._delta is None or location is None or location.item_id:
            return resource_data
        try:
            changes = await self._delta.get_recent_changes(notification.resource)
        except RelayError as e:
            if is_batch_fatal(e):
                raise
            log.warning("dispatch.delta.failed", error=e.message, error_type=e.kind)
            return resource_data

        live = [i for i in changes.changed_items if i.get("id") and "deleted" not in i]
        if not live:
            log.debug("dispatch.delta.no_changes", initial_sync=changes.initial_sync)
            return resource_data
        latest = max(live, key=lambda i: i.get("lastModifiedDateTime") or "")
        log.debug("dispatch.delta.item", item_id=latest["id"], changed=len(live))
        return {**(resource_data or {}), "id": str(latest["id"])}

    async def cleanup(self, days: int) -> int:
        """Drop item snapshots older than days; 0 without a change detector."""
        if self._detector is None:
            return 0
        return await self._detector.cleanup(days)
