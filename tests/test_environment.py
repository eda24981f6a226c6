"""Tests for queue settings resolution from env / folder / uipath tokens."""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from listrelay.routing.client_state import ClientStateTokens
from listrelay.routing.environment import EnvironmentPreset, QueueSettings, resolve_queue_settings

BASE = QueueSettings(
    orchestrator_url="https://cloud.uipath.com/acme/base",
    tenant_name="Base",
    organization_unit_id="100",
    default_queue="DefaultQueue",
    client_id="cid",
    client_secret="secret",
)
PRESETS = {
    "DEV": EnvironmentPreset(tenant_name="DevTenant", organization_unit_id="1", orchestrator_url=""),
    "PROD": EnvironmentPreset(
        tenant_name="ProdTenant",
        organization_unit_id="2",
        orchestrator_url="https://cloud.uipath.com/acme/prod",
    ),
}


class TestResolveQueueSettings(unittest.TestCase):
    def test_no_tokens_keeps_base(self):
        self.assertEqual(resolve_queue_settings(ClientStateTokens.parse(None), BASE, PRESETS), BASE)

    def test_env_preset(self):
        settings = resolve_queue_settings(ClientStateTokens.parse("env:dev"), BASE, PRESETS)
        self.assertEqual(settings.tenant_name, "DevTenant")
        self.assertEqual(settings.organization_unit_id, "1")
        # empty preset values fall back to base
        self.assertEqual(settings.orchestrator_url, BASE.orchestrator_url)

    def test_folder_overrides_preset(self):
        settings = resolve_queue_settings(ClientStateTokens.parse("env:PROD;folder:42"), BASE, PRESETS)
        self.assertEqual(settings.tenant_name, "ProdTenant")
        self.assertEqual(settings.organization_unit_id, "42")
        self.assertEqual(settings.orchestrator_url, "https://cloud.uipath.com/acme/prod")

    def test_queue_override_keeps_case(self):
        settings = resolve_queue_settings(ClientStateTokens.parse("uipath:InvoiceQueue"), BASE, PRESETS)
        self.assertEqual(settings.default_queue, "InvoiceQueue")

    def test_unknown_preset_ignored(self):
        settings = resolve_queue_settings(ClientStateTokens.parse("env:staging"), BASE, PRESETS)
        self.assertEqual(settings, BASE)

    def test_settings_are_hashable(self):
        same = BASE.model_copy()
        self.assertEqual(hash(same), hash(BASE))
        self.assertEqual(QueueSettings().missing(), ["orchestrator_url", "tenant_name", "client_id", "client_secret"])


if __name__ == "__main__":
    unittest.main()
