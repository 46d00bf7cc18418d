"""Shared state objects for pipeline stages."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from everybot.config import Settings, settings as default_settings
from everybot.fetch import FetchClient
from everybot.locks import TenantLock
from everybot.storage import ListingStore


@dataclass(slots=True)
class ItemError:
    item_id: str | None
    source: str | None
    url: str | None
    error: str

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.item_id, "source": self.source, "url": self.url, "error": self.error}


@dataclass(slots=True)
class BatchResult:
    stage: str
    processed: int = 0
    skipped: int = 0
    errors: list[ItemError] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    def add_error(self, error: Exception | str, *, item_id=None, source=None, url=None) -> ItemError:
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        item = ItemError(item_id=item_id, source=source, url=url, error=message)
        self.errors.append(item)
        return item

    def as_summary(self) -> dict[str, Any]:
        """The ``{processed, errors}`` payload handed back to callers."""
        return {
            "stage": self.stage,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": [e.as_dict() for e in self.errors],
            **self.details,
        }


class PipelineContext:
    """
    Everything one invocation needs: catalog, fetch client, tenant locks,
    settings and the per-host pacing clock.

    Built per run and closed afterwards; nothing is shared between runs.
    """

    def __init__(
        self,
        store: ListingStore,
        fetcher: FetchClient | None = None,
        locks: TenantLock | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.fetcher = fetcher or FetchClient()
        self.locks = locks or TenantLock(store.engine, self.settings.lock_ttl_minutes)
        self._last_call: dict[str, float] = {}

    async def pace(self, key: str, delay: float) -> None:
        """Wait until ``delay`` seconds have passed since the previous call for ``key``."""
        if delay > 0:
            last = self._last_call.get(key)
            if last is not None:
                remaining = delay - (time.monotonic() - last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
        self._last_call[key] = time.monotonic()

    async def aclose(self) -> None:
        await self.fetcher.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
