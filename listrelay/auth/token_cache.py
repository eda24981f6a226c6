"""Client-credential token cache shared by the Graph and UiPath clients.

One ``CredentialCache`` per process, passed by reference to whoever needs a token. Each
registered provider key maps to a fetcher coroutine returning a raw OAuth2 token response
(``access_token``, ``expires_in``, ``token_type``). Cached tokens are handed out while more
than the refresh buffer (5 minutes) remains; otherwise the fetcher runs again. Concurrent
misses may fetch twice, the last writer wins.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, NamedTuple

import httpx
import msal
from pydantic import BaseModel

from listrelay.config import ENABLE_TOKEN_CACHE, TOKEN_REFRESH_BUFFER_SECONDS
from listrelay.errors import AuthenticationError, error_from_status
from listrelay.utils.logger import get_logger

logger = get_logger("listrelay.auth.token_cache")

DEFAULT_EXPIRES_IN = 3600

TokenFetcher = Callable[[], Awaitable[dict[str, Any]]]


class TokenCacheEntry(BaseModel):
    access_token: str
    expires_at: float
    token_type: str = "Bearer"

    def is_valid(self, now: float, buffer_seconds: float) -> bool:
        return self.expires_at - now > buffer_seconds


class _Provider(NamedTuple):
    fetcher: TokenFetcher
    tenant: str
    client_id: str

    @property
    def cache_key(self) -> str:
        return f"{self.tenant}_{self.client_id}"


class CredentialCache:
    """Per-provider token cache with an injectable clock."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        refresh_buffer_seconds: float = TOKEN_REFRESH_BUFFER_SECONDS,
        enabled: bool = ENABLE_TOKEN_CACHE,
    ):
        self._clock = clock
        self._buffer = refresh_buffer_seconds
        self._enabled = enabled
        self._providers: dict[str, _Provider] = {}
        self._entries: dict[str, TokenCacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._last_fetch_time: float | None = None

    def register(
        self,
        provider_key: str,
        fetcher: TokenFetcher,
        *,
        tenant: str = "",
        client_id: str = "",
        replace: bool = False,
    ) -> None:
        """Register a token fetcher under provider_key. Raises ValueError on duplicates unless replace."""
        if provider_key in self._providers and not replace:
            raise ValueError(f"Token provider already registered: {provider_key!r}")
        self._providers[provider_key] = _Provider(fetcher=fetcher, tenant=tenant, client_id=client_id)
        self._entries.pop(self._entry_key(provider_key), None)

    def is_registered(self, provider_key: str) -> bool:
        return provider_key in self._providers

    def providers(self) -> list[str]:
        return list(self._providers)

    def _entry_key(self, provider_key: str) -> str:
        provider = self._providers.get(provider_key)
        if provider is None:
            return provider_key
        return f"{provider_key}_token_{provider.cache_key}"

    async def get_token(self, provider_key: str, force_refresh: bool = False) -> str:
        """Return a bearer token for provider_key, fetching when the cached one is near expiry."""
        entry = await self.get_entry(provider_key, force_refresh=force_refresh)
        return entry.access_token

    async def get_entry(self, provider_key: str, force_refresh: bool = False) -> TokenCacheEntry:
        provider = self._providers.get(provider_key)
        if provider is None:
            raise AuthenticationError(
                f"No token provider registered for {provider_key!r}",
                {"provider": provider_key},
            )
        key = self._entry_key(provider_key)
        now = self._clock()

        if self._enabled and not force_refresh:
            cached = self._entries.get(key)
            if cached is not None and cached.is_valid(now, self._buffer):
                self._hits += 1
                logger.debug(
                    "auth.token_cache.hit",
                    provider=provider_key,
                    expires_in=int(cached.expires_at - now),
                )
                return cached
        self._misses += 1

        logger.debug("auth.token_cache.fetch", provider=provider_key, forced=force_refresh)
        try:
            raw = await provider.fetcher()
            access_token = raw.get("access_token") if isinstance(raw, dict) else None
            if not access_token:
                raise AuthenticationError(
                    "Token response did not contain an access_token",
                    {"provider": provider_key},
                )
        except Exception as e:
            self._entries.pop(key, None)
            self._errors += 1
            logger.error(
                "auth.token_cache.fetch_failed",
                provider=provider_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            if isinstance(e, AuthenticationError):
                raise
            raise AuthenticationError(
                f"Failed to obtain access token for {provider_key}: {e}",
                {"provider": provider_key, "cause": type(e).__name__},
            ) from e

        fetched_at = self._clock()
        expires_in = int(raw.get("expires_in") or DEFAULT_EXPIRES_IN)
        entry = TokenCacheEntry(
            access_token=access_token,
            expires_at=fetched_at + expires_in,
            token_type=raw.get("token_type") or "Bearer",
        )
        self._last_fetch_time = fetched_at
        if self._enabled:
            self._entries[key] = entry
        logger.info("auth.token_cache.fetched", provider=provider_key, expires_in=expires_in)
        return entry

    def clear(self, provider_key: str | None = None) -> None:
        """Drop one provider's cached token, or every cached token."""
        if provider_key is None:
            self._entries.clear()
            return
        self._entries.pop(self._entry_key(provider_key), None)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        total = self._hits + self._misses
        tokens = {}
        for provider_key in self._providers:
            entry = self._entries.get(self._entry_key(provider_key))
            if entry is None:
                continue
            tokens[provider_key] = {
                "valid": entry.is_valid(now, self._buffer),
                "expires_at": datetime.fromtimestamp(entry.expires_at, tz=timezone.utc).isoformat(),
                "expires_in_seconds": max(0, int(entry.expires_at - now)),
            }
        return {
            "enabled": self._enabled,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "last_fetch_time": (
                datetime.fromtimestamp(self._last_fetch_time, tz=timezone.utc).isoformat()
                if self._last_fetch_time is not None
                else None
            ),
            "cached_tokens": len(self._entries),
            "tokens": tokens,
        }


def graph_token_fetcher(
    tenant_id: str,
    client_id: str,
    client_secret: str,
    scope: str,
) -> TokenFetcher:
    """Fetcher for Microsoft Graph using MSAL's confidential client (client credentials).

    The MSAL application is built on first use since its constructor performs authority discovery.
    """
    apps: list[msal.ConfidentialClientApplication] = []

    def _acquire() -> dict[str, Any]:
        if not apps:
            apps.append(
                msal.ConfidentialClientApplication(
                    client_id=client_id,
                    client_credential=client_secret,
                    authority=f"https://login.microsoftonline.com/{tenant_id}",
                )
            )
        app = apps[0]
        # MSAL keeps its own in-memory cache; the CredentialCache decides when to refetch.
        app.remove_tokens_for_client()
        result = app.acquire_token_for_client(scopes=[scope])
        if not result or "access_token" not in result:
            error = (result or {}).get("error", "unknown_error")
            description = (result or {}).get("error_description", "Token request failed")
            raise AuthenticationError(
                f"Graph token request failed: {description}",
                {"error": error},
            )
        return result

    async def fetch() -> dict[str, Any]:
        return await asyncio.to_thread(_acquire)

    return fetch


def uipath_token_fetcher(
    http_client: httpx.AsyncClient,
    token_url: str,
    client_id: str,
    client_secret: str,
    scope: str | None = None,
    timeout: float = 30.0,
) -> TokenFetcher:
    """Fetcher for UiPath Cloud's identity endpoint (form-encoded client credentials)."""

    async def fetch() -> dict[str, Any]:
        form = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scope:
            form["scope"] = scope
        response = await http_client.post(token_url, data=form, timeout=timeout)
        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text[:500]
            raise error_from_status(
                response.status_code,
                f"UiPath token request failed with status {response.status_code}",
                {"response": body},
            )
        return response.json()

    return fetch
