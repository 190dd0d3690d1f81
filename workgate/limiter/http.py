"""
HTTP client that passes every request through an admission limiter.
"""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from workgate.limiter.limiter import AdmissionLimiter

logger = logging.getLogger(__name__)

KeyFunc = Callable[[httpx.Request], str]


def host_key(request: httpx.Request) -> str:
    """Default limiter key: the request's host."""
    return request.url.host


class RateLimitedClient(httpx.AsyncClient):
    """
    httpx.AsyncClient whose requests first acquire a limiter grant.

    The limiter key comes from `key`: a fixed string, or a function of
    the outgoing request (the host by default).

    Example:
        async with RateLimitedClient(limiter, key=lambda r: r.headers["X-Tenant"]) as client:
            response = await client.post("https://ocr.example.com/v1/parse", json=body)
    """

    def __init__(
        self,
        limiter: AdmissionLimiter,
        *,
        key: str | KeyFunc | None = None,
        acquire_timeout: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.limiter = limiter
        self._key = key or host_key
        self._acquire_timeout = acquire_timeout

    def key_for(self, request: httpx.Request) -> str:
        if isinstance(self._key, str):
            return self._key
        return self._key(request)

    async def send(self, request: httpx.Request, **kwargs: Any) -> httpx.Response:
        key = self.key_for(request)
        admission = await self.limiter.acquire(key, timeout=self._acquire_timeout)
        if admission.queued:
            logger.debug(
                "Request admitted after waiting",
                extra={
                    "limiter": self.limiter.name,
                    "key": key,
                    "waited_ms": round(admission.waited_ms, 1),
                    "url": str(request.url),
                },
            )
        return await super().send(request, **kwargs)
