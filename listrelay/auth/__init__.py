"""OAuth2 client-credential tokens for the source and queue services."""

from listrelay.auth.token_cache import (
    CredentialCache,
    TokenCacheEntry,
    graph_token_fetcher,
    uipath_token_fetcher,
)

__all__ = [
    "CredentialCache",
    "TokenCacheEntry",
    "graph_token_fetcher",
    "uipath_token_fetcher",
]
