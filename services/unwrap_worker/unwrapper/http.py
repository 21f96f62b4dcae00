from __future__ import annotations

from typing import Awaitable, Callable

import httpx


RequestHook = Callable[[httpx.Request], Awaitable[None]]


def async_http_client(
    timeout: float = 10.0,
    *,
    max_redirects: int = 10,
    user_agent: str | None = None,
    request_hooks: list[RequestHook] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an httpx.AsyncClient that follows redirects.

    ``request_hooks`` run before every request on the wire, redirect hops included.
    """
    headers = {"User-Agent": user_agent} if user_agent else None
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        max_redirects=max_redirects,
        headers=headers,
        event_hooks={"request": list(request_hooks or [])},
        transport=transport,
    )
