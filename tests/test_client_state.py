"""Tests for clientState token parsing, dispatch gate and forward options."""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from listrelay.routing.client_state import (
    ClientStateTokens,
    field_list,
    forward_config,
    parse_forward_mode,
    queue_name_override,
    requests_queue_dispatch,
)


class TestClientStateTokens(unittest.TestCase):
    def test_parse_lowercases_and_trims(self):
        tokens = ClientStateTokens.parse(" Processor:COSTCO ; env:Dev;; folder:1 ")
        self.assertEqual(len(tokens), 3)
        self.assertEqual(tokens.get("processor"), "costco")
        self.assertEqual(tokens.get("ENV"), "dev")
        self.assertEqual(tokens.get_raw("env"), "Dev")
        self.assertEqual(tokens.join(), "processor:costco;env:dev;folder:1")

    def test_parse_then_join_is_stable(self):
        for raw in (
            "processor:costco;env:dev;folder:1",
            "uipath:MyQueue;mode:withData",
            "forward:https://example.com/hook;mode:simple",
            "",
        ):
            once = ClientStateTokens.parse(raw)
            twice = ClientStateTokens.parse(once.join())
            self.assertEqual(once, twice)
            self.assertEqual(once.join(), twice.join())

    def test_empty_and_none(self):
        self.assertFalse(ClientStateTokens.parse(None))
        self.assertFalse(ClientStateTokens.parse(""))
        self.assertIsNone(ClientStateTokens.parse(None).get("processor"))

    def test_last_wins_and_first(self):
        tokens = ClientStateTokens.parse("env:dev;env:prod")
        self.assertEqual(tokens.get("env"), "prod")
        self.assertEqual(tokens.first("env"), "dev")

    def test_value_may_contain_colon(self):
        tokens = ClientStateTokens.parse("forward:https://example.com:8443/hook")
        self.assertEqual(tokens.get_raw("forward"), "https://example.com:8443/hook")

    def test_has_and_contains(self):
        tokens = ClientStateTokens.parse("processor:Costco;flag")
        self.assertTrue(tokens.has("processor"))
        self.assertTrue(tokens.has("processor", "COSTCO"))
        self.assertFalse(tokens.has("processor", "uipath"))
        self.assertTrue(tokens.has("flag"))
        self.assertTrue(tokens.contains("cost"))
        self.assertFalse(tokens.contains("uipath"))


class TestDispatchGate(unittest.TestCase):
    def test_opt_in_forms(self):
        for raw in ("processor:uipath", "uipath:enabled", "uipath=true", "uipath:InvoiceQueue"):
            self.assertTrue(requests_queue_dispatch(ClientStateTokens.parse(raw)), raw)

    def test_not_requested(self):
        for raw in (None, "env:dev", "processor:costco", "forward:https://example.com"):
            self.assertFalse(requests_queue_dispatch(ClientStateTokens.parse(raw)), raw)

    def test_queue_name_keeps_case(self):
        self.assertEqual(queue_name_override(ClientStateTokens.parse("uipath:InvoiceQueue")), "InvoiceQueue")
        self.assertIsNone(queue_name_override(ClientStateTokens.parse("uipath:enabled")))
        self.assertIsNone(queue_name_override(ClientStateTokens.parse("processor:uipath")))


class TestForwardConfig(unittest.TestCase):
    def test_forward_with_options(self):
        tokens = ClientStateTokens.parse(
            "forward:https://Example.com/Hook;mode:WITHCHANGES;includeFields:Title, Status"
        )
        config = forward_config(tokens)
        self.assertIsNotNone(config)
        self.assertEqual(config.url, "https://Example.com/Hook")
        self.assertEqual(config.mode, "withChanges")
        self.assertEqual(config.include_fields, ["Title", "Status"])
        self.assertIsNone(config.exclude_fields)

    def test_no_forward_token(self):
        self.assertIsNone(forward_config(ClientStateTokens.parse("processor:costco")))

    def test_non_http_target_ignored(self):
        self.assertIsNone(forward_config(ClientStateTokens.parse("forward:ftp://example.com")))

    def test_mode_fallback(self):
        self.assertEqual(parse_forward_mode(None), "simple")
        self.assertEqual(parse_forward_mode("nonsense"), "simple")
        self.assertEqual(parse_forward_mode("withdata"), "withData")

    def test_field_list(self):
        self.assertIsNone(field_list(None))
        self.assertIsNone(field_list(" , "))
        self.assertEqual(field_list("a, b,,c"), ["a", "b", "c"])


if __name__ == "__main__":
    unittest.main()
