"""Tests for the dispatch core: gate, routing, environment selection and failure policy."""

import asyncio
import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx

from listrelay.auth.token_cache import CredentialCache
from listrelay.changes.delta import DeltaTracker
from listrelay.changes.detector import ChangeDetector
from listrelay.changes.state_store import InMemoryStateStore
from listrelay.dispatch import Dispatcher, wants_queue_dispatch
from listrelay.errors import AuthenticationError, ExternalServiceError
from listrelay.forwarder import Forwarder
from listrelay.processors import COSTCO_PROCESSOR, build_default_registry
from listrelay.queue.client import QueueClientFactory
from listrelay.routing.client_state import ClientStateTokens
from listrelay.routing.environment import EnvironmentPreset, QueueSettings
from listrelay.source.graph_client import DeltaPage
from listrelay.source.models import ListItem
from listrelay.webhook.models import Notification
from listrelay.webhook.tracking import InMemoryTrackingStore

RESOURCE = "sites/x:/sites/y:/lists/z"
TOKEN_URL = "https://identity.example/connect/token"
BASE = QueueSettings(
    orchestrator_url="https://cloud.uipath.com/acme/orchestrator_",
    tenant_name="Base",
    organization_unit_id="100",
    default_queue="DefaultQueue",
    client_id="cid",
    client_secret="secret",
)
PRESETS = {"DEV": EnvironmentPreset(tenant_name="DevTenant", organization_unit_id="5")}


class FakeSource:
    """fetch_item replays items (or raises exceptions) in order; delta replays pages."""

    def __init__(self, *items, pages=()):
        self.items = list(items)
        self.pages = list(pages)
        self.calls = 0
        self.resource_data = []

    async def fetch_item(self, resource, resource_data=None):
        self.calls += 1
        self.resource_data.append(resource_data)
        item = self.items.pop(0) if self.items else None
        if isinstance(item, Exception):
            raise item
        return item

    async def delta(self, site_id, list_id, delta_link=None):
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


class Endpoints:
    """MockTransport handler for the identity endpoint, Orchestrator and a forward target."""

    def __init__(self, queue_failures: int = 0):
        self.queue_failures = queue_failures
        self.queue_requests: list[httpx.Request] = []
        self.forwarded: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"access_token": "uipath-token", "expires_in": 3600})
        if request.url.path.endswith("AddQueueItem"):
            self.queue_requests.append(request)
            if self.queue_failures:
                self.queue_failures -= 1
                return httpx.Response(503, json={"message": "unavailable"})
            return httpx.Response(201, json={"Id": len(self.queue_requests), "Status": "New"})
        if request.url.host == "hooks.example.com":
            self.forwarded.append(json.loads(request.content))
            return httpx.Response(200, json={})
        return httpx.Response(404, json={})


async def _no_sleep(delay):
    return None


def _costco_item(item_id: str = "17", **fields) -> ListItem:
    values = {
        "Title": "Routing form",
        "Status": "Send Generated Form",
        "ShiptoEmail": "dock@example.com",
        "ShipDate": "5/7/2024",
        "Style": "ST-100",
        "PO_No": "4500",
    }
    values.update(fields)
    return ListItem(id=item_id, fields=values)


def _notification(client_state: str | None, change_type: str = "updated", subscription_id: str = "sub-1") -> Notification:
    return Notification(
        subscription_id=subscription_id,
        resource=RESOURCE,
        change_type=change_type,
        client_state=client_state,
    )


def _dispatch(notifications, source, endpoints=None, tracking=None, store=None, delta=False):
    endpoints = endpoints or Endpoints()
    tracking = tracking if tracking is not None else InMemoryTrackingStore()

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(endpoints)) as http:
            factory = QueueClientFactory(http, CredentialCache(), identity_url=TOKEN_URL, enabled=True, sleep=_no_sleep)
            dispatcher = Dispatcher(
                registry=build_default_registry(),
                queue_clients=factory,
                source=source,
                tracking=tracking,
                change_detector=ChangeDetector(store if store is not None else InMemoryStateStore()),
                forwarder=Forwarder(http),
                base_settings=BASE,
                presets=PRESETS,
                delta=DeltaTracker(InMemoryStateStore(), source) if delta else None,
            )
            return await dispatcher.dispatch_batch(notifications)

    return asyncio.run(run())


class TestDispatcher(unittest.TestCase):
    def test_costco_token_routes_with_env_and_folder(self):
        endpoints = Endpoints()
        tracking = InMemoryTrackingStore()
        outcomes = _dispatch(
            [_notification("processor:costco;env:dev;folder:1")],
            FakeSource(_costco_item()),
            endpoints,
            tracking,
        )

        outcome = outcomes[0]
        self.assertTrue(outcome.processed, outcome)
        self.assertEqual(outcome.processor, COSTCO_PROCESSOR)
        request = endpoints.queue_requests[0]
        self.assertEqual(request.headers["X-UIPATH-OrganizationUnitId"], "1")
        self.assertEqual(request.headers["X-UIPATH-TenantName"], "DevTenant")
        item_data = json.loads(request.content)["itemData"]
        self.assertEqual(item_data["Name"], "COSTCO-INLINE-Routing")
        self.assertEqual(item_data["Priority"], "High")
        self.assertTrue(item_data["Reference"].startswith("COSTCO_4500_17_"))
        self.assertEqual(tracking.notification_counts["sub-1"], 1)

    def test_missing_client_state_recovered_from_tracking(self):
        tracking = InMemoryTrackingStore({"sub-1": "processor:costco"})
        outcomes = _dispatch([_notification(None)], FakeSource(_costco_item()), tracking=tracking)
        self.assertTrue(outcomes[0].processed)
        self.assertEqual(outcomes[0].processor, COSTCO_PROCESSOR)

    def test_queue_not_requested(self):
        source = FakeSource(_costco_item())
        outcomes = _dispatch([_notification("env:dev")], source)
        self.assertFalse(outcomes[0].processed)
        self.assertEqual(outcomes[0].reason, "Queue processing not requested")
        self.assertEqual(source.calls, 0)

    def test_deleted_not_dispatched(self):
        source = FakeSource(_costco_item())
        outcomes = _dispatch([_notification("processor:costco", change_type="deleted")], source)
        self.assertFalse(outcomes[0].processed)
        self.assertIn("deleted", outcomes[0].reason)
        self.assertEqual(source.calls, 0)

    def test_no_matching_processor_is_not_an_error(self):
        outcomes = _dispatch([_notification("uipath:enabled")], FakeSource(_costco_item()))
        self.assertFalse(outcomes[0].processed)
        self.assertIsNone(outcomes[0].error)
        self.assertEqual(outcomes[0].reason, "No matching processor registered")

    def test_unresolvable_item(self):
        outcomes = _dispatch([_notification("processor:costco")], FakeSource(None))
        self.assertEqual(outcomes[0].reason, "Unable to resolve SharePoint item")

    def test_validation_failure_does_not_stop_batch(self):
        tracking = InMemoryTrackingStore()
        endpoints = Endpoints()
        outcomes = _dispatch(
            [
                _notification("processor:costco", subscription_id="sub-bad"),
                _notification("processor:costco", subscription_id="sub-good"),
            ],
            FakeSource(_costco_item(ShiptoEmail=""), _costco_item(item_id="18")),
            endpoints,
            tracking,
        )
        self.assertEqual(len(outcomes), 2)
        self.assertEqual(outcomes[0].error_type, "VALIDATION_ERROR")
        self.assertFalse(outcomes[0].processed)
        self.assertTrue(outcomes[1].processed)
        self.assertEqual(len(endpoints.queue_requests), 1)
        self.assertEqual(len(tracking.failures["sub-bad"]), 1)

    def test_failed_submission_is_retried_on_next_notification(self):
        store = InMemoryStateStore()
        endpoints = Endpoints(queue_failures=100)
        notification = _notification("processor:costco")

        first = _dispatch([notification], FakeSource(_costco_item()), endpoints, store=store)
        self.assertEqual(first[0].error_type, "EXTERNAL_SERVICE_ERROR")

        endpoints.queue_failures = 0
        second = _dispatch([notification], FakeSource(_costco_item()), endpoints, store=store)
        self.assertTrue(second[0].processed, second[0])

        third = _dispatch([notification], FakeSource(_costco_item()), endpoints, store=store)
        self.assertFalse(third[0].processed)
        self.assertEqual(third[0].reason, "Item does not meet processing criteria")

    def test_delta_query_names_the_changed_item(self):
        page = DeltaPage(
            items=[
                {"id": "3", "lastModifiedDateTime": "2024-05-01T10:00:00Z"},
                {"id": "9", "lastModifiedDateTime": "2024-05-02T10:00:00Z"},
                {"id": "12", "deleted": {"state": "deleted"}},
            ],
            delta_link="https://graph.example/delta?token=1",
        )
        source = FakeSource(_costco_item(item_id="9"), pages=[page])
        outcomes = _dispatch([_notification("processor:costco")], source, delta=True)
        self.assertTrue(outcomes[0].processed, outcomes[0])
        self.assertEqual(source.resource_data, [{"id": "9"}])

    def test_failed_delta_query_falls_back_to_recent_item(self):
        source = FakeSource(_costco_item(), pages=[ExternalServiceError("delta unavailable")])
        outcomes = _dispatch([_notification("processor:costco")], source, delta=True)
        self.assertTrue(outcomes[0].processed, outcomes[0])
        self.assertEqual(source.resource_data, [None])

    def test_credential_failure_aborts_batch(self):
        source = FakeSource(AuthenticationError("token expired"), _costco_item())
        outcomes = _dispatch(
            [
                _notification("processor:costco", subscription_id="sub-1"),
                _notification("processor:costco", subscription_id="sub-2"),
            ],
            source,
        )
        self.assertEqual(len(outcomes), 2)
        self.assertEqual(outcomes[0].error_type, "AUTHENTICATION_ERROR")
        self.assertEqual(outcomes[1].reason, "Batch aborted after credential failure")
        self.assertEqual(source.calls, 1)

    def test_forward_token_forwards_without_queue(self):
        endpoints = Endpoints()
        outcomes = _dispatch([_notification("forward:https://hooks.example.com/in")], FakeSource(), endpoints)
        self.assertTrue(outcomes[0].forward.success)
        self.assertEqual(outcomes[0].reason, "Queue processing not requested")
        self.assertEqual(endpoints.forwarded[0]["notification"]["subscriptionId"], "sub-1")
        self.assertEqual(endpoints.queue_requests, [])


def test_wants_queue_dispatch():
    assert wants_queue_dispatch(ClientStateTokens.parse("processor:costco"))
    assert wants_queue_dispatch(ClientStateTokens.parse("uipath:Orders"))
    assert not wants_queue_dispatch(ClientStateTokens.parse("env:prod;folder:3"))


if __name__ == "__main__":
    unittest.main()
