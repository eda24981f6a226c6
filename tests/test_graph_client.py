"""Tests for SharePointClient request handling against a mocked Graph."""

import asyncio
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx

from listrelay.auth.token_cache import CredentialCache
from listrelay.errors import AuthenticationError, AuthorizationError
from listrelay.source.graph_client import SharePointClient


class CountingFetcher:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return {"access_token": f"t{self.calls}", "expires_in": 3600}


def _run(handler, calls):
    fetcher = CountingFetcher()
    cache = CredentialCache(enabled=True)
    cache.register("graph", fetcher)
    errors = []

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = SharePointClient(http, cache)
            for _ in range(calls):
                try:
                    await client.get_json("sites/site-1/lists/list-1/items/7")
                except (AuthenticationError, AuthorizationError) as e:
                    errors.append(e)

    asyncio.run(run())
    return fetcher, cache, errors


class TestSharePointClient(unittest.TestCase):
    def test_unauthorized_response_drops_cached_token(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})

        fetcher, cache, errors = _run(handler, 2)

        self.assertEqual(len(errors), 2)
        self.assertIsInstance(errors[0], AuthenticationError)
        self.assertEqual(fetcher.calls, 2)
        self.assertEqual(seen, ["Bearer t1", "Bearer t2"])
        self.assertEqual(cache.stats()["cached_tokens"], 0)

    def test_forbidden_response_keeps_cached_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"code": "accessDenied"}})

        fetcher, cache, errors = _run(handler, 2)

        self.assertEqual(len(errors), 2)
        self.assertIsInstance(errors[0], AuthorizationError)
        self.assertEqual(fetcher.calls, 1)
        self.assertEqual(cache.stats()["cached_tokens"], 1)

    def test_success_reuses_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "7"})

        fetcher, _, errors = _run(handler, 3)
        self.assertEqual(errors, [])
        self.assertEqual(fetcher.calls, 1)


if __name__ == "__main__":
    unittest.main()
