"""Resilient HTTP retrieval shared by every pipeline stage."""

import asyncio
import random

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from everybot.config import settings
from everybot.errors import BlockedError, HttpStatusError, TransientNetworkError

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"

# Upper bound on a server-provided Retry-After, in seconds
MAX_RETRY_AFTER = 30.0


class FetchResult(BaseModel):
    """Outcome of a GET after redirects were followed."""

    status: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    final_url: str
    requested_url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def redirected(self) -> bool:
        return self.final_url != self.requested_url

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


class FetchClient:
    """
    GET with redirects, timeouts and bounded retries.

    Timeouts, connection errors and 5xx answers are retried with
    exponential backoff plus jitter. 429 is retried the same way and
    becomes ``BlockedError`` once the budget is spent; 403 is
    ``BlockedError`` straight away. Other 4xx statuses are returned to the
    caller untouched.
    """

    def __init__(
        self,
        proxy_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.proxy_url = proxy_url or settings.proxy_url
        self.timeout = settings.request_timeout if timeout is None else timeout
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_backoff = settings.retry_backoff if retry_backoff is None else retry_backoff
        self.user_agent = user_agent or settings.user_agent
        self.transport = transport
        self.client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": HTML_ACCEPT,
                    "Accept-Language": settings.accept_language,
                    "Cache-Control": "no-cache",
                    "Pragma": "no-cache",
                },
                follow_redirects=True,
                timeout=self.timeout,
                proxy=self.proxy_url,
                transport=self.transport,
            )
        return self.client

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _backoff_delay(self, attempt: int, retry_after: str | None = None) -> float:
        if retry_after:
            try:
                return min(float(retry_after), MAX_RETRY_AFTER)
            except ValueError:
                pass
        base = self.retry_backoff * (2 ** (attempt - 1))
        return base + random.uniform(0, self.retry_backoff)

    async def fetch(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict[str, str] | None = None,
    ) -> FetchResult:
        """
        GET ``url`` and return status, headers, body and the final URL.

        Raises:
            TransientNetworkError: timeouts/connection failures outlived the retries
            BlockedError: HTTP 403, or 429 after the retries
        """
        client = await self._get_client()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await client.get(url, params=params, headers=headers)
            except httpx.TransportError as e:
                if attempt > self.max_retries:
                    raise TransientNetworkError(f"{type(e).__name__}: {e}", url) from e
                delay = self._backoff_delay(attempt)
                logger.debug("Retrying {} in {:.2f}s after {}", url, delay, type(e).__name__)
                await asyncio.sleep(delay)
                continue

            status = response.status_code
            final_url = str(response.url)
            first = response.history[0] if response.history else response

            if status == 403:
                raise BlockedError(status, final_url)

            if status == 429 or status >= 500:
                if attempt <= self.max_retries:
                    delay = self._backoff_delay(attempt, response.headers.get("retry-after"))
                    logger.debug("Retrying {} in {:.2f}s after HTTP {}", url, delay, status)
                    await asyncio.sleep(delay)
                    continue
                if status == 429:
                    raise BlockedError(status, final_url)

            return FetchResult(
                status=status,
                headers={k.lower(): v for k, v in response.headers.items()},
                body=response.text,
                final_url=final_url,
                requested_url=str(first.request.url),
            )

    async def fetch_ok(self, url: str, **kwargs) -> FetchResult:
        """Like ``fetch`` but raises ``HttpStatusError`` unless the answer is 2xx."""
        result = await self.fetch(url, **kwargs)
        if not result.ok:
            raise HttpStatusError(result.status, result.final_url)
        return result
