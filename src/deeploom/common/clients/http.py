from __future__ import annotations

import httpx


class CustomAsyncHTTPClient(httpx.AsyncClient):
    """Async HTTP client that ignores system proxy settings."""

    def __init__(self, *args, **kwargs):
        # Enlever proxies pour éviter conflits avec proxy système
        kwargs.pop("proxies", None)
        super().__init__(*args, **kwargs, trust_env=False)


def build_async_http_client(timeout_seconds: float) -> CustomAsyncHTTPClient:
    """Client httpx async dédié au gateway LLM (timeout global + connect court)."""
    return CustomAsyncHTTPClient(
        timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        follow_redirects=True,
    )
